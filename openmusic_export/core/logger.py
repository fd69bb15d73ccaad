"""Centralized logging configuration for the playlist export service.

Provides the logger factory used by every component, with console output,
rotating log files and a start-up summary of the loaded configuration.

Features:
    - Console handler on stdout plus rotating file handlers
    - Separate error log file
    - Module-level log levels
    - Structured status lines via log_context()
    - Start-up banner with masked configuration summary

Author: OpenMusic
Created: 2025-11-02
Version: 1.1.0
"""

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from openmusic_export.config.settings import ExportConfig

_ROOT_LOGGER: logging.Logger | None = None
_LOG_DIR = Path(__file__).parent.parent / "logs"
_LOG_FORMAT_DETAILED = (
    "%(asctime)s | %(levelname)-8s | %(name)s | %(funcName)s:%(lineno)d | %(message)s"
)
_LOG_FORMAT_SIMPLE = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_MODULE_LEVELS = {
    "openmusic_export.worker": logging.DEBUG,
    "openmusic_export.clients": logging.DEBUG,
    "openmusic_export.database": logging.DEBUG,
    "openmusic_export.broker": logging.DEBUG,
    "openmusic_export.templates": logging.INFO,
    "openmusic_export.config": logging.INFO,
    "pika": logging.WARNING,
}

_banner_printed = False

COLORS = {
    "reset": "\033[0m",
    "bold": "\033[1m",
    "dim": "\033[2m",
    "cyan": "\033[36m",
    "green": "\033[32m",
    "yellow": "\033[33m",
    "blue": "\033[34m",
    "magenta": "\033[35m",
    "red": "\033[31m",
}


def _mask_password(password: str) -> str:
    """Mask password for display, showing only first and last char.

    Args:
        password: Password to mask.

    Returns:
        Masked password string.
    """
    if not password:
        return "(not set)"
    if len(password) <= 2:
        return "***"
    return f"{password[0]}{'*' * (len(password) - 2)}{password[-1]}"


def print_banner(component: str) -> None:
    """Print the start-up banner once per process.

    Args:
        component: Name of the running component ("worker" or "api").
    """
    global _banner_printed  # noqa: PLW0603
    if _banner_printed:
        return
    _banner_printed = True

    c = COLORS
    print(f"{c['dim']}{'─' * 72}{c['reset']}")
    print(
        f"{c['cyan']}{c['bold']}  OpenMusic Playlist Export{c['reset']} "
        f"{c['dim']}│{c['reset']} {component}"
    )
    print(f"{c['dim']}{'─' * 72}{c['reset']}")


def print_config_summary(settings: "ExportConfig") -> None:
    """Print a formatted configuration summary organized by categories.

    Credentials are masked.

    Args:
        settings: ExportConfig instance with loaded configuration.
    """
    c = COLORS

    def _line(label: str, value: str, color: str = "cyan") -> None:
        print(f"  {c['dim']}│{c['reset']} {label:<26} {c[color]}{value}{c['reset']}")

    def _header(title: str, color: str) -> None:
        print(f"\n  {c[color]}▶ {title}{c['reset']}")
        print(f"  {c['dim']}├{'─' * 50}{c['reset']}")

    _header("Catalog Database", "blue")
    _line("Host", f"{settings.PGHOST}:{settings.PGPORT}")
    _line("Database", settings.PGDATABASE)
    _line("User", settings.PGUSER)
    _line("Password", _mask_password(settings.PGPASSWORD))
    _line("Pool", f"{settings.DB_POOL_SIZE_MIN}-{settings.DB_POOL_SIZE_MAX}")

    _header("Message Broker", "green")
    _line("Server", settings.get_masked_broker_url())
    _line("Queue", settings.EXPORT_QUEUE_NAME)
    _line("Max Retries", str(settings.EXPORT_MAX_RETRIES))
    _line("Retry Delay (initial)", f"{settings.EXPORT_RETRY_DELAY_SECONDS}s")

    _header("SMTP", "magenta")
    _line("Host", f"{settings.SMTP_HOST}:{settings.SMTP_PORT}")
    _line("User", settings.SMTP_USER)
    _line("Password", _mask_password(settings.SMTP_PASSWORD))
    _line("Implicit TLS", str(settings.SMTP_PORT == 465).lower())
    _line("Send Attempts", str(settings.MAIL_SEND_ATTEMPTS))

    _header("Logging", "yellow")
    _line("Level", settings.LOG_LEVEL, "green")
    _line("Log to File", str(settings.LOG_TO_FILE).lower())
    _line("Directory", settings.LOG_DIR)

    print(f"\n{c['dim']}{'─' * 72}{c['reset']}\n")


def setup_logging(
    log_dir: Path | str | None = None,
    log_level: str = "INFO",
    file_level: str = "DEBUG",
    console_level: str = "INFO",
    enable_file: bool = True,
    settings: Optional["ExportConfig"] = None,
    component: str = "worker",
) -> None:
    """Configure root logger with console and file handlers.

    Should be called once at process start-up.

    Args:
        log_dir: Directory for log files. Defaults to openmusic_export/logs.
        log_level: Root logger level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file_level: File handler level.
        console_level: Console handler level.
        enable_file: Whether to write logs to files.
        settings: Optional ExportConfig for printing the configuration summary.
        component: Component name shown in the banner and log file name.
    """
    global _ROOT_LOGGER

    logs_dir = Path(log_dir) if log_dir else _LOG_DIR

    root_logger = logging.getLogger()
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, console_level.upper(), logging.INFO))
    console_handler.setFormatter(
        logging.Formatter(_LOG_FORMAT_SIMPLE, datefmt=_DATE_FORMAT)
    )
    root_logger.addHandler(console_handler)

    if enable_file:
        logs_dir.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            logs_dir / f"openmusic_export.{component}.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        file_handler.setLevel(getattr(logging, file_level.upper(), logging.DEBUG))
        file_handler.setFormatter(
            logging.Formatter(_LOG_FORMAT_DETAILED, datefmt=_DATE_FORMAT)
        )
        root_logger.addHandler(file_handler)

        error_handler = logging.handlers.RotatingFileHandler(
            logs_dir / f"openmusic_export.{component}.error.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
            encoding="utf-8",
        )
        error_handler.setLevel(logging.ERROR)
        error_handler.setFormatter(
            logging.Formatter(_LOG_FORMAT_DETAILED, datefmt=_DATE_FORMAT)
        )
        root_logger.addHandler(error_handler)

    for module_name, level in _MODULE_LEVELS.items():
        logging.getLogger(module_name).setLevel(level)

    _ROOT_LOGGER = root_logger

    print_banner(component)
    if settings:
        print_config_summary(settings)


def get_logger(name: str, log_level: str | None = None) -> logging.Logger:
    """Get a logger instance for a module.

    Call setup_logging() once at start-up for full configuration.

    Args:
        name: Logger name (typically __name__ of calling module).
        log_level: Optional override for the logger level.

    Returns:
        Logger instance ready for use.

    Example:
        from openmusic_export.core.logger import get_logger

        logger = get_logger(__name__)
        logger.info("Export job accepted")
    """
    logger = logging.getLogger(name)

    if log_level:
        logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))

    return logger


def log_context(
    operation: str,
    job_id: str | None = None,
    recipient: str | None = None,
    **kwargs,
) -> str:
    """Format a log context string with job metadata.

    Args:
        operation: Operation name (e.g., "process_job", "send_export").
        job_id: Job identifier (AMQP message id) if applicable.
        recipient: Recipient email if applicable.
        **kwargs: Additional context key-value pairs.

    Returns:
        Formatted context string for logging.

    Example:
        >>> log_context("process_job", job_id="a1b2", playlist="playlist-1", attempt=2)
        '[a1b2] process_job (playlist=playlist-1, attempt=2)'
    """
    context = operation

    if job_id:
        context = f"[{job_id}] {context}"

    if recipient:
        context = f"{context} →{recipient}"

    if kwargs:
        extra = ", ".join(f"{k}={v}" for k, v in kwargs.items())
        context = f"{context} ({extra})"

    return context
