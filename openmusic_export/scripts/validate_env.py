"""Validate .env file completeness against configuration requirements.

Checks that all required configuration variables are present, then runs
the full configuration validation.

Usage:
    python -m openmusic_export.scripts.validate_env

Author: OpenMusic
Created: 2025-11-02
"""

import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from openmusic_export.config import load_config
from openmusic_export.core.exceptions import ExportConfigError

# Required configuration variables
REQUIRED_VARS = {
    # Catalog database
    "PGHOST",
    "PGPORT",
    "PGUSER",
    "PGPASSWORD",
    "PGDATABASE",
    # Broker
    "RABBITMQ_SERVER",
    "EXPORT_MAX_RETRIES",
    "EXPORT_RETRY_DELAY_SECONDS",
    # SMTP
    "SMTP_HOST",
    "SMTP_PORT",
    "SMTP_USER",
    "SMTP_PASSWORD",
}


def validate_env() -> tuple[bool, list[str]]:
    """Validate the environment has all required variables.

    Returns:
        Tuple of (is_valid, missing_vars).
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]
    return len(missing) == 0, missing


def main() -> int:
    """Main entry point for validation script.

    Returns:
        Exit code (0 for success, 1 for failure).
    """
    env_file = Path.cwd() / ".env"
    if env_file.exists():
        load_dotenv(env_file)

    is_valid, missing_vars = validate_env()

    if not is_valid:
        print("❌ .env file is missing required variables:")
        for var in sorted(missing_vars):
            print(f"   - {var}")
        print("\n📝 Please copy .env.example to .env and fill in the values")
        print("   cp .env.example .env")
        return 1

    try:
        load_config()
    except ExportConfigError as e:
        print(f"❌ {e}")
        return 1

    print("✅ .env file is valid - all required variables present")
    return 0


if __name__ == "__main__":
    sys.exit(main())
