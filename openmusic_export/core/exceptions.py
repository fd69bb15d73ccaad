"""Custom exceptions for the playlist export service.

Every error raised by the catalog reader, the mailer or the broker layer
carries an ``error_class`` tag so the consumer can decide between retrying
and dead-lettering a job without inspecting error messages.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from __future__ import annotations

from enum import Enum


class ErrorClass(str, Enum):
    """Retry classification attached to every service error.

    Attributes:
        TRANSIENT: Temporary failure, the job may succeed on a later attempt.
        PERMANENT: Retrying cannot help, the job must be dead-lettered.
    """

    TRANSIENT = "transient"
    PERMANENT = "permanent"


class ExportServiceError(Exception):
    """Base exception for all export service errors.

    Allows callers to catch every export-related failure with a single
    except block.

    Example:
        try:
            reader.fetch(playlist_id)
        except ExportServiceError as e:
            logger.error(f"Export failed ({e.error_class.value}): {e}")
    """

    error_class: ErrorClass = ErrorClass.PERMANENT

    @property
    def is_transient(self) -> bool:
        """Whether the error is worth retrying."""
        return self.error_class is ErrorClass.TRANSIENT


class ExportConfigError(ExportServiceError):
    """Exception raised for missing or malformed configuration.

    Raised at start-up; the worker and the API refuse to start.

    Example:
        raise ExportConfigError("RABBITMQ_SERVER environment variable not set")
    """

    pass


class QueueUnavailableError(ExportServiceError):
    """Exception raised when the broker connection or channel is not usable.

    Attributes:
        queue (str, optional): Name of the queue that could not be reached.
    """

    error_class = ErrorClass.TRANSIENT

    def __init__(self, message: str, queue: str | None = None):
        """Initialize queue error.

        Args:
            message: Error description.
            queue: Optional name of the target queue.
        """
        super().__init__(message)
        self.queue = queue


class NotFoundError(ExportServiceError):
    """Exception raised when a referenced entity does not exist.

    Attributes:
        entity_id (str, optional): Identifier that was looked up.

    Example:
        raise NotFoundError("Playlist not found", entity_id="playlist-123")
    """

    def __init__(self, message: str, entity_id: str | None = None):
        """Initialize not-found error.

        Args:
            message: Error description.
            entity_id: Optional identifier of the missing entity.
        """
        super().__init__(message)
        self.entity_id = entity_id


class ForbiddenError(ExportServiceError):
    """Exception raised when a user is not allowed to access a playlist."""

    pass


class ValidationError(ExportServiceError):
    """Exception raised for malformed export jobs or request payloads.

    Attributes:
        fields (list[str]): Names of the offending fields, when known.
    """

    def __init__(self, message: str, fields: list[str] | None = None):
        """Initialize validation error.

        Args:
            message: Error description.
            fields: Optional list of invalid field names.
        """
        super().__init__(message)
        self.fields = fields or []


class TransientIOError(ExportServiceError):
    """Exception raised for network, timeout, broker and SMTP connection issues.

    Attributes:
        reconnect (bool): Whether the underlying session should be rebuilt.

    Example:
        raise TransientIOError("Connection reset by smtp.gmail.com", reconnect=True)
    """

    error_class = ErrorClass.TRANSIENT

    def __init__(self, message: str, reconnect: bool = False):
        """Initialize transient I/O error.

        Args:
            message: Error description.
            reconnect: Whether the failure happened at the connection level.
        """
        super().__init__(message)
        self.reconnect = reconnect


class PermanentDeliveryError(ExportServiceError):
    """Exception raised when the mail server refuses the message for good.

    Covers authentication failures, invalid or refused recipients and 5xx
    rejections.

    Attributes:
        smtp_code (int, optional): SMTP reply code when available.
        refused (dict): Refused recipients mapped to their SMTP reply.
    """

    def __init__(
        self,
        message: str,
        smtp_code: int | None = None,
        refused: dict[str, tuple[int, bytes]] | None = None,
    ):
        """Initialize permanent delivery error.

        Args:
            message: Error description.
            smtp_code: Optional SMTP reply code.
            refused: Optional mapping of refused recipients.
        """
        super().__init__(message)
        self.smtp_code = smtp_code
        self.refused = refused or {}


class CatalogError(ExportServiceError):
    """Exception raised for catalog database failures that retrying won't fix."""

    pass


class TemplateRenderError(ExportServiceError):
    """Exception raised for template rendering failures.

    Attributes:
        template_name (str, optional): Name of the template that failed.

    Example:
        raise TemplateRenderError(
            "Missing variable: playlist",
            template_name="playlist_export.html"
        )
    """

    def __init__(self, message: str, template_name: str | None = None):
        """Initialize template render error.

        Args:
            message: Error description.
            template_name: Optional name of the template that failed.
        """
        super().__init__(message)
        self.template_name = template_name
