#!/usr/bin/env python3
"""Check connectivity to the services the export worker depends on.

Tests the catalog database, the message broker and SMTP authentication.
Optionally sends a real export of one playlist.

Usage:
    python -m openmusic_export.scripts.check_services
    python -m openmusic_export.scripts.check_services --verbose
    python -m openmusic_export.scripts.check_services --playlist playlist-1 --test-email user@example.com
"""

from __future__ import annotations

import argparse
import sys

from openmusic_export.broker.producer import ExportProducer
from openmusic_export.clients.smtp import Mailer
from openmusic_export.config import ExportConfig, load_config
from openmusic_export.core.exceptions import ExportServiceError
from openmusic_export.core.logger import get_logger, setup_logging
from openmusic_export.database.playlists import PlaylistReader

logger = get_logger(__name__)


def print_config(config: ExportConfig) -> None:
    """Print the connection settings (with credentials masked)."""
    smtp_cfg = config.get_smtp_config()

    print("\n📋 Loaded Configuration:")
    print(f"  Catalog:        {config.PGUSER}@{config.PGHOST}:{config.PGPORT}/{config.PGDATABASE}")
    print(f"  Broker:         {config.get_masked_broker_url()}")
    print(f"  Queue:          {config.EXPORT_QUEUE_NAME}")
    print(f"  SMTP Host:      {smtp_cfg.host}:{smtp_cfg.port}")
    print(f"  SMTP Username:  {smtp_cfg.username}")
    print(f"  SMTP From:      {smtp_cfg.from_email} ({smtp_cfg.from_name})")
    print(f"  Implicit TLS:   {'Yes' if smtp_cfg.implicit_tls else 'No (STARTTLS when offered)'}")


def check_catalog(config: ExportConfig) -> bool:
    """Check the catalog database connection."""
    print("\n🧪 Testing catalog database...")
    try:
        reader = PlaylistReader(config)
    except ExportServiceError as e:
        print(f"❌ Catalog connection failed: {e}")
        return False

    try:
        ok = reader.health_check()
    finally:
        reader.close()

    print("✅ Catalog connection PASSED" if ok else "❌ Catalog connection FAILED")
    return ok


def check_broker(config: ExportConfig) -> bool:
    """Check the broker connection and declare the queue topology."""
    print("\n🧪 Testing message broker...")
    producer = ExportProducer(config)
    try:
        producer.init()
        ok = producer.health_check()
    except ExportServiceError as e:
        print(f"❌ Broker connection failed: {e}")
        return False
    finally:
        producer.close()

    print("✅ Broker connection PASSED" if ok else "❌ Broker connection FAILED")
    return ok


def check_smtp(config: ExportConfig) -> bool:
    """Check SMTP connection and authentication."""
    print("\n🧪 Testing SMTP connection...")
    with Mailer.from_config(config) as mailer:
        ok = mailer.validate_connection()

    print("✅ SMTP connection PASSED" if ok else "❌ SMTP connection FAILED")
    return ok


def send_test_export(config: ExportConfig, playlist_id: str, recipient: str) -> bool:
    """Email a real export of one playlist.

    Returns:
        True if the email was accepted by the SMTP server.
    """
    print(f"\n📧 Sending export of {playlist_id} to: {recipient}")
    reader = PlaylistReader(config)
    try:
        playlist = reader.fetch(playlist_id)
        with Mailer.from_config(config) as mailer:
            message_id = mailer.send_export(recipient, playlist.to_export_json())
    except ExportServiceError as e:
        print(f"❌ Test export failed ({e.error_class.value}): {e}")
        return False
    finally:
        reader.close()

    print(f"✅ Test export sent: {message_id}")
    return True


def main() -> int:
    """Main entry point.

    Returns:
        0 if all checks passed, 1 if any failed.
    """
    parser = argparse.ArgumentParser(
        description="Check catalog, broker and SMTP connectivity of the export service.",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging output")
    parser.add_argument("--playlist", "-p", metavar="ID", help="Playlist to send with --test-email")
    parser.add_argument("--test-email", "-t", metavar="EMAIL", help="Send a test export to this address")

    args = parser.parse_args()
    if args.test_email and not args.playlist:
        parser.error("--test-email requires --playlist")

    setup_logging(
        log_level="DEBUG" if args.verbose else "INFO",
        console_level="DEBUG" if args.verbose else "WARNING",
        enable_file=False,
        component="check",
    )

    try:
        config = load_config()
    except ExportServiceError as e:
        print(f"\n❌ {e}")
        return 1

    print_config(config)

    results = [check_catalog(config), check_broker(config), check_smtp(config)]
    if args.test_email:
        results.append(send_test_export(config, args.playlist, args.test_email))

    print("\n" + "=" * 80)
    if all(results):
        print("  ✅ All checks passed. Start the worker with: openmusic-export-worker")
        return 0

    print("  ❌ Some checks failed. Set LOG_LEVEL=DEBUG or use --verbose for details.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
