"""OpenMusic Export - Asynchronous playlist export pipeline.

Accepts "export my playlist" requests, queues them on a durable AMQP
queue and emails each playlist as a JSON attachment:
- HTTP API validates, authorizes and enqueues export jobs
- Worker consumes jobs one at a time and mails the playlist snapshot
- Transient failures are retried through a delay queue
- Permanent failures are dead-lettered for inspection

Architecture:
    - RabbitMQ queues (export:playlist, .retry, .dead)
    - Consumer state machine with reconnect backoff and graceful shutdown
    - Read-only PostgreSQL catalog access with connection pooling
    - SMTP mailer with Jinja2 templates

Modules:
    - core: Exceptions, backoff policy, logger
    - config: Pydantic v2 settings
    - models: Data models (ExportJob, Playlist, SMTPConfig)
    - broker: Queue topology and producer (pika)
    - clients: External integrations (SMTP)
    - database: Catalog reads (PostgreSQL)
    - templates: Email template rendering (Jinja2)
    - worker: Export consumer daemon

Usage:
    # Enqueue an export
    from openmusic_export import ExportJob, ExportProducer, load_config

    producer = ExportProducer(load_config())
    producer.init()
    producer.publish(ExportJob(playlistId="playlist-1", targetEmail="user@example.com"))

    # Run the worker
    python -m openmusic_export.worker

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

__version__ = "1.0.0"

# Broker
from openmusic_export.broker import ExportProducer

# Clients
from openmusic_export.clients import Mailer

# Configuration
from openmusic_export.config import ExportConfig, load_config

# Core utilities
from openmusic_export.core import (
    CatalogError,
    ErrorClass,
    ExponentialBackoff,
    ExportConfigError,
    ExportServiceError,
    ForbiddenError,
    NotFoundError,
    PermanentDeliveryError,
    QueueUnavailableError,
    TemplateRenderError,
    TransientIOError,
    ValidationError,
    get_logger,
)

# Database
from openmusic_export.database import PlaylistReader

# Models
from openmusic_export.models import ExportJob, Playlist, SMTPConfig, Song

# Templates
from openmusic_export.templates import TemplateRenderer

# Worker
from openmusic_export.worker import ConsumerState, ExportConsumer, JobOutcome

__all__ = [
    # Version
    "__version__",
    # Core
    "ErrorClass",
    "ExportServiceError",
    "ExportConfigError",
    "QueueUnavailableError",
    "NotFoundError",
    "ForbiddenError",
    "ValidationError",
    "TransientIOError",
    "PermanentDeliveryError",
    "CatalogError",
    "TemplateRenderError",
    "ExponentialBackoff",
    "get_logger",
    # Configuration
    "ExportConfig",
    "load_config",
    # Models
    "ExportJob",
    "Playlist",
    "Song",
    "SMTPConfig",
    # Broker
    "ExportProducer",
    # Clients
    "Mailer",
    # Database
    "PlaylistReader",
    # Templates
    "TemplateRenderer",
    # Worker
    "ConsumerState",
    "ExportConsumer",
    "JobOutcome",
]
