"""Export service configuration with Pydantic v2.

Manages catalog database, message broker, SMTP and worker settings loaded
from environment variables or a .env file.

Connection settings and the retry policy have no defaults: the process
refuses to start when any of them is missing or malformed.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from __future__ import annotations

from pathlib import Path
from urllib.parse import urlsplit, urlunsplit

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from openmusic_export.core.exceptions import ExportConfigError
from openmusic_export.models.smtp_config import SMTPConfig


class ExportConfig(BaseSettings):
    """Playlist export service configuration.

    Loads settings from environment variables and .env file using Pydantic v2.
    All settings are case-sensitive and strictly validated.

    Attributes:
        PGHOST: Catalog database host.
        PGPORT: Catalog database port.
        PGUSER: Catalog database user.
        PGPASSWORD: Catalog database password.
        PGDATABASE: Catalog database name.
        RABBITMQ_SERVER: AMQP broker URL (amqp:// or amqps://).
        EXPORT_QUEUE_NAME: Durable queue carrying export jobs.
        EXPORT_MAX_RETRIES: Re-publications allowed before a job is dead-lettered.
        EXPORT_RETRY_DELAY_SECONDS: Initial delay before a re-published job runs.
        SMTP_HOST: SMTP server hostname.
        SMTP_PORT: SMTP server port (465 means implicit TLS).
        SMTP_USER: SMTP authentication username.
        SMTP_PASSWORD: SMTP authentication password.
        MAIL_SEND_ATTEMPTS: SMTP attempts per job before giving up.
        BROKER_CONNECT_ATTEMPTS: Connect attempts per connect cycle.
        SHUTDOWN_GRACE_SECONDS: Time an in-flight job may keep running after
            a shutdown signal before its result is abandoned.
        LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        TEMPLATE_DIR: Directory containing Jinja2 email templates.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # ========================================================================
    # Service Configuration
    # ========================================================================
    SERVICE_NAME: str = Field(default="openmusic-export", description="Service name")
    SERVICE_VERSION: str = Field(default="1.0.0", description="Service version")
    API_HOST: str = Field(default="0.0.0.0", description="API server host")
    API_PORT: int = Field(default=5000, ge=1, le=65535, description="API server port")
    API_KEY: str = Field(
        default="",
        description="Shared key expected in X-API-Key (empty disables the check)",
    )

    # ========================================================================
    # Catalog Database Configuration
    # ========================================================================
    PGHOST: str = Field(..., description="Catalog database host")
    PGPORT: int = Field(..., ge=1, le=65535, description="Catalog database port")
    PGUSER: str = Field(..., description="Catalog database user")
    PGPASSWORD: str = Field(..., description="Catalog database password")
    PGDATABASE: str = Field(..., description="Catalog database name")
    DB_POOL_SIZE_MIN: int = Field(default=1, ge=1, le=50, description="Min pooled connections")
    DB_POOL_SIZE_MAX: int = Field(default=5, ge=1, le=100, description="Max pooled connections")
    DB_POOL_TIMEOUT_SECONDS: float = Field(
        default=10.0,
        gt=0,
        le=300,
        description="How long to wait for a free pooled connection",
    )
    DB_STATEMENT_TIMEOUT_MS: int = Field(
        default=15000,
        ge=0,
        description="Server-side statement timeout (0 disables it)",
    )

    # ========================================================================
    # Message Broker Configuration
    # ========================================================================
    RABBITMQ_SERVER: str = Field(..., description="AMQP broker URL")
    EXPORT_QUEUE_NAME: str = Field(
        default="export:playlist",
        min_length=1,
        description="Durable queue carrying export jobs",
    )
    EXPORT_MAX_RETRIES: int = Field(
        ...,
        ge=0,
        le=50,
        description="Re-publications allowed before dead-lettering",
    )
    EXPORT_RETRY_DELAY_SECONDS: int = Field(
        ...,
        ge=0,
        le=86400,
        description="Initial delay before a re-published job is delivered",
    )
    BROKER_CONNECT_ATTEMPTS: int = Field(default=5, ge=1, le=100, description="Connect attempts per cycle")
    BROKER_CONNECT_BACKOFF_SECONDS: float = Field(default=1.0, ge=0, description="Initial connect backoff")
    BROKER_CONNECT_BACKOFF_MAX_SECONDS: float = Field(default=30.0, ge=0, description="Connect backoff cap")
    BROKER_RESTART_COOLDOWN_SECONDS: float = Field(
        default=60.0,
        ge=0,
        description="Pause before a new connect cycle once a cycle is exhausted",
    )
    BROKER_HEARTBEAT_SECONDS: int = Field(default=60, ge=0, description="AMQP heartbeat interval")
    CONSUMER_POLL_SECONDS: float = Field(
        default=1.0,
        gt=0,
        le=60,
        description="Consume loop inactivity timeout between shutdown checks",
    )
    SHUTDOWN_GRACE_SECONDS: float = Field(
        default=30.0,
        ge=0,
        description="Grace period for the in-flight job after a shutdown signal",
    )

    # ========================================================================
    # SMTP Configuration
    # ========================================================================
    SMTP_HOST: str = Field(..., description="SMTP server hostname")
    SMTP_PORT: int = Field(..., ge=1, le=65535, description="SMTP server port")
    SMTP_USER: str = Field(..., description="SMTP authentication username")
    SMTP_PASSWORD: str = Field(..., description="SMTP authentication password")
    SMTP_FROM_EMAIL: str = Field(
        default="",
        description="Sender address (defaults to SMTP_USER)",
    )
    SMTP_FROM_NAME: str = Field(default="OpenMusic API", description="Sender display name")
    SMTP_TIMEOUT: int = Field(default=60, ge=5, le=300, description="SMTP socket timeout in seconds")
    EXPORT_MAIL_SUBJECT: str = Field(
        default="OpenMusic Playlist Export",
        min_length=1,
        description="Subject line of export emails",
    )
    MAIL_SEND_ATTEMPTS: int = Field(default=3, ge=1, le=10, description="SMTP attempts per job")
    MAIL_BACKOFF_SECONDS: float = Field(default=2.0, ge=0, description="Initial SMTP retry backoff")

    # ========================================================================
    # Logging Configuration
    # ========================================================================
    LOG_LEVEL: str = Field(
        default="INFO",
        pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        description="Logging level",
    )
    LOG_TO_FILE: bool = Field(default=False, description="Whether to log to file")
    LOG_DIR: str = Field(default="./logs", description="Directory for log files")

    # ========================================================================
    # Template Configuration
    # ========================================================================
    TEMPLATE_DIR: str = Field(
        default_factory=lambda: str(Path(__file__).parent.parent / "templates"),
        description="Directory containing Jinja2 email templates",
    )

    @field_validator("PGHOST", "PGUSER", "PGDATABASE", "SMTP_HOST", "SMTP_USER")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        """Reject empty or whitespace-only connection settings.

        Raises:
            ValueError: If the value is blank.
        """
        if not v.strip():
            raise ValueError("value cannot be empty")
        return v.strip()

    @field_validator("SMTP_PASSWORD")
    @classmethod
    def validate_smtp_password(cls, v: str) -> str:
        """Validate and clean SMTP password.

        Removes spaces: Gmail app passwords are displayed in groups of four
        but must be sent without them.

        Raises:
            ValueError: If the password is empty.
        """
        v = v.replace(" ", "")
        if not v:
            raise ValueError("SMTP_PASSWORD cannot be empty")
        return v

    @field_validator("RABBITMQ_SERVER")
    @classmethod
    def validate_broker_url(cls, v: str) -> str:
        """Validate the broker URL scheme and host.

        Raises:
            ValueError: If the URL is not amqp:// or amqps:// with a host.
        """
        parts = urlsplit(v.strip())
        if parts.scheme not in ("amqp", "amqps"):
            raise ValueError("RABBITMQ_SERVER must start with amqp:// or amqps://")
        if not parts.hostname:
            raise ValueError("RABBITMQ_SERVER must include a host")
        return v.strip()

    def get_pool_kwargs(self) -> dict[str, str | int]:
        """Get psycopg2 connection keyword arguments for the catalog pool."""
        kwargs: dict[str, str | int] = {
            "host": self.PGHOST,
            "port": self.PGPORT,
            "user": self.PGUSER,
            "password": self.PGPASSWORD,
            "dbname": self.PGDATABASE,
        }
        if self.DB_STATEMENT_TIMEOUT_MS:
            kwargs["options"] = f"-c statement_timeout={self.DB_STATEMENT_TIMEOUT_MS}"
        return kwargs

    def get_masked_broker_url(self) -> str:
        """Broker URL with the password replaced by ***."""
        parts = urlsplit(self.RABBITMQ_SERVER)
        if parts.password is None:
            return self.RABBITMQ_SERVER
        netloc = f"{parts.username}:***@{parts.hostname}"
        if parts.port:
            netloc = f"{netloc}:{parts.port}"
        return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))

    def get_smtp_config(self) -> SMTPConfig:
        """Get SMTP configuration suitable for the Mailer."""
        return SMTPConfig(
            host=self.SMTP_HOST,
            port=self.SMTP_PORT,
            username=self.SMTP_USER,
            password=self.SMTP_PASSWORD,
            from_email=self.SMTP_FROM_EMAIL or self.SMTP_USER,
            from_name=self.SMTP_FROM_NAME,
            timeout=self.SMTP_TIMEOUT,
        )


def load_config(**overrides) -> ExportConfig:
    """Load and validate configuration, failing fast on any problem.

    Args:
        **overrides: Explicit values taking precedence over the environment.

    Returns:
        Validated ExportConfig.

    Raises:
        ExportConfigError: If a required setting is missing or malformed.
    """
    try:
        return ExportConfig(**overrides)
    except ValidationError as e:
        problems = []
        for error in e.errors():
            field = ".".join(str(part) for part in error["loc"])
            problems.append(f"{field} ({error['msg']})")
        raise ExportConfigError(
            f"Invalid configuration: {'; '.join(problems)}"
        ) from e
