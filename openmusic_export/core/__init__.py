"""Core module for the playlist export service.

Provides the exception taxonomy, backoff policy and logging configuration.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from openmusic_export.core.backoff import ExponentialBackoff
from openmusic_export.core.exceptions import (
    CatalogError,
    ErrorClass,
    ExportConfigError,
    ExportServiceError,
    ForbiddenError,
    NotFoundError,
    PermanentDeliveryError,
    QueueUnavailableError,
    TemplateRenderError,
    TransientIOError,
    ValidationError,
)
from openmusic_export.core.logger import (
    get_logger,
    log_context,
    setup_logging,
)

__all__ = [
    # Exceptions
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
    # Retry
    "ExponentialBackoff",
    # Logging
    "get_logger",
    "setup_logging",
    "log_context",
]
