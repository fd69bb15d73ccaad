"""SMTP mailer for playlist exports.

Sends the export email (HTML + plain-text body and a ``playlist.json``
attachment) over a reused SMTP session.

Features:
- Session reuse with liveness check and automatic rebuild
- Implicit TLS on port 465, STARTTLS elsewhere when offered
- Retry loop with exponential backoff for transient failures
- Failures classified at the source (transient vs permanent)

Author: OpenMusic
Version: 1.0.0
"""

from __future__ import annotations

import json
import smtplib
import ssl
import threading
import time
from email.mime.application import MIMEApplication
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr, make_msgid
from typing import Any

from openmusic_export.config import ExportConfig
from openmusic_export.core.backoff import ExponentialBackoff
from openmusic_export.core.exceptions import (
    ExportServiceError,
    PermanentDeliveryError,
    TransientIOError,
)
from openmusic_export.core.logger import get_logger, log_context
from openmusic_export.models.smtp_config import SMTPConfig
from openmusic_export.templates.renderer import PLAYLIST_EXPORT_TEMPLATE, TemplateRenderer

logger = get_logger(__name__)

ATTACHMENT_FILENAME = "playlist.json"


def classify_smtp_error(error: Exception) -> ExportServiceError:
    """Translate an SMTP or socket failure into a tagged service error.

    Args:
        error: Exception raised by smtplib or the socket layer.

    Returns:
        PermanentDeliveryError for authentication failures, refused
        addresses and 5xx replies; TransientIOError otherwise.
    """
    if isinstance(error, smtplib.SMTPAuthenticationError):
        return PermanentDeliveryError(
            f"SMTP authentication failed: {error}", smtp_code=error.smtp_code
        )
    if isinstance(error, smtplib.SMTPRecipientsRefused):
        return PermanentDeliveryError(
            f"All recipients refused: {error.recipients}", refused=error.recipients
        )
    if isinstance(error, smtplib.SMTPSenderRefused):
        return PermanentDeliveryError(
            f"Sender refused: {error}", smtp_code=error.smtp_code
        )
    if isinstance(error, smtplib.SMTPNotSupportedError):
        return PermanentDeliveryError(f"SMTP server does not support: {error}")
    if isinstance(error, (smtplib.SMTPServerDisconnected, smtplib.SMTPConnectError)):
        return TransientIOError(f"SMTP connection lost: {error}", reconnect=True)
    if isinstance(error, smtplib.SMTPResponseException):
        code = error.smtp_code
        if 500 <= code < 600:
            return PermanentDeliveryError(
                f"Message rejected ({code}): {error.smtp_error!r}", smtp_code=code
            )
        # 421: server is closing the session
        return TransientIOError(
            f"SMTP temporary failure ({code}): {error.smtp_error!r}",
            reconnect=code == 421,
        )
    if isinstance(error, ssl.SSLCertVerificationError):
        return PermanentDeliveryError(f"SMTP certificate rejected: {error}")
    if isinstance(error, (OSError, smtplib.SMTPException)):
        return TransientIOError(f"SMTP transport error: {error}", reconnect=True)
    return TransientIOError(f"Unexpected SMTP failure: {error}", reconnect=True)


def export_context(payload: bytes) -> dict[str, Any]:
    """Template context for an export attachment.

    The payload is the ``{"playlist": {...}}`` document attached to the
    email. Bodies still render when it is not one.
    """
    try:
        document = json.loads(payload)
    except ValueError:
        document = None

    playlist = document.get("playlist") if isinstance(document, dict) else None
    if not isinstance(playlist, dict):
        playlist = {}
    return {"playlist": {"name": "your playlist", "songs": [], **playlist}}


class Mailer:
    """SMTP export mailer with session reuse.

    Attributes:
        config: SMTP configuration.
        subject: Subject line of export emails.
        backoff: Retry policy of the send loop.
    """

    # Sessions idle for longer than this are rebuilt without a NOOP check.
    CONNECTION_TIMEOUT = 60

    def __init__(
        self,
        smtp_config: SMTPConfig,
        renderer: TemplateRenderer | None = None,
        subject: str = "OpenMusic Playlist Export",
        backoff: ExponentialBackoff | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        """Initialize the mailer.

        Args:
            smtp_config: SMTP configuration.
            renderer: Template renderer (package templates if None).
            subject: Subject line of export emails.
            backoff: Retry policy (3 attempts, 2s initial delay if None).
            stop_event: Shutdown signal; once set, failed sends are not retried
                and backoff waits end early.
        """
        self.config = smtp_config
        self.renderer = renderer or TemplateRenderer()
        self.subject = subject
        self.backoff = backoff or ExponentialBackoff(attempts=3, base_seconds=2.0)
        self.stop_event = stop_event or threading.Event()

        self._connection: smtplib.SMTP | None = None
        self._last_used: float = 0
        self._lock = threading.Lock()

        logger.info(
            f"Mailer initialized: {self.config.host}:{self.config.port} "
            f"(implicit_tls={self.config.implicit_tls})"
        )

    @classmethod
    def from_config(
        cls,
        config: ExportConfig,
        renderer: TemplateRenderer | None = None,
        stop_event: threading.Event | None = None,
    ) -> Mailer:
        """Build a mailer from the service configuration."""
        return cls(
            smtp_config=config.get_smtp_config(),
            renderer=renderer or TemplateRenderer(config.TEMPLATE_DIR),
            subject=config.EXPORT_MAIL_SUBJECT,
            backoff=ExponentialBackoff(
                attempts=config.MAIL_SEND_ATTEMPTS,
                base_seconds=config.MAIL_BACKOFF_SECONDS,
            ),
            stop_event=stop_event,
        )

    def _get_connection(self) -> smtplib.SMTP:
        """Get or create SMTP session with automatic refresh.

        Returns:
            Active SMTP session.

        Raises:
            PermanentDeliveryError: If authentication is rejected.
            TransientIOError: If the server cannot be reached.
        """
        with self._lock:
            now = time.time()

            if self._connection and (now - self._last_used) < self.CONNECTION_TIMEOUT:
                try:
                    if self._connection.noop()[0] == 250:
                        self._last_used = now
                        return self._connection
                except (smtplib.SMTPException, OSError):
                    logger.debug("Stale SMTP session detected, reconnecting...")

            self._close_connection()
            return self._create_connection()

    def _create_connection(self) -> smtplib.SMTP:
        """Open and authenticate a new SMTP session.

        Raises:
            PermanentDeliveryError: If authentication is rejected.
            TransientIOError: If the server cannot be reached.
        """
        smtp: smtplib.SMTP | None = None
        try:
            logger.debug(f"Connecting to SMTP: {self.config.host}:{self.config.port}")
            if self.config.implicit_tls:
                smtp = smtplib.SMTP_SSL(
                    self.config.host,
                    self.config.port,
                    timeout=self.config.timeout,
                    context=ssl.create_default_context(),
                )
            else:
                smtp = smtplib.SMTP(
                    self.config.host,
                    self.config.port,
                    timeout=self.config.timeout,
                )
                smtp.ehlo()
                if smtp.has_extn("starttls"):
                    logger.debug("Starting TLS...")
                    smtp.starttls(context=ssl.create_default_context())
                    smtp.ehlo()

            smtp.login(self.config.username, self.config.password)

            self._connection = smtp
            self._last_used = time.time()

            logger.debug("SMTP session established")
            return smtp

        except Exception as e:
            if smtp is not None:
                _quietly_close(smtp)
            error = classify_smtp_error(e)
            logger.error(f"Failed to establish SMTP session: {e}")
            raise error from e

    def _close_connection(self) -> None:
        """Close existing SMTP session safely."""
        if self._connection:
            _quietly_close(self._connection)
            self._connection = None
            self._last_used = 0

    def build_message(
        self,
        recipient: str,
        payload: bytes,
        context: dict[str, Any],
        message_id: str,
    ) -> MIMEMultipart:
        """Build the export email.

        Args:
            recipient: Recipient address.
            payload: JSON bytes attached as playlist.json.
            context: Template context (expects a ``playlist`` mapping).
            message_id: Message-ID header value.

        Returns:
            multipart/mixed message with text, HTML and the JSON attachment.
        """
        msg = MIMEMultipart("mixed")
        msg["From"] = formataddr((self.config.from_name, self.config.from_email))
        msg["To"] = recipient
        msg["Subject"] = self.subject
        msg["Message-ID"] = message_id

        body = MIMEMultipart("alternative")
        body.attach(
            MIMEText(self.renderer.render_text(PLAYLIST_EXPORT_TEMPLATE, context), "plain", "utf-8")
        )
        body.attach(
            MIMEText(self.renderer.render_html(PLAYLIST_EXPORT_TEMPLATE, context), "html", "utf-8")
        )
        msg.attach(body)

        attachment = MIMEApplication(payload, _subtype="json")
        attachment.add_header("Content-Disposition", "attachment", filename=ATTACHMENT_FILENAME)
        msg.attach(attachment)

        return msg

    def send_export(
        self,
        recipient: str,
        payload: bytes,
        context: dict[str, Any] | None = None,
    ) -> str:
        """Send a playlist export email.

        Transient failures are retried according to ``backoff`` until the
        stop event is set; permanent failures abort immediately.
        Connection-level failures rebuild the session before the next attempt.

        Args:
            recipient: Recipient address.
            payload: Serialized playlist export.
            context: Template context for the email body (derived from
                ``payload`` if None).

        Returns:
            Message-ID of the delivered email.

        Raises:
            PermanentDeliveryError: On authentication failure, refused
                recipient or 5xx rejection.
            TransientIOError: If every attempt failed transiently, or the
                stop event ended the retries.
        """
        if context is None:
            context = export_context(payload)
        message_id = make_msgid(domain=self.config.from_email.rpartition("@")[2] or None)
        attempts = self.backoff.attempts

        for attempt in range(1, attempts + 1):
            ctx = log_context("send_export", recipient=recipient, attempt=f"{attempt}/{attempts}")
            msg = self.build_message(recipient, payload, context, message_id)

            try:
                smtp = self._get_connection()
                refused = smtp.send_message(
                    msg,
                    from_addr=self.config.from_email,
                    to_addrs=[recipient],
                )
            except ExportServiceError as error:
                failure = error
            except (smtplib.SMTPException, OSError) as e:
                failure = classify_smtp_error(e)
                failure.__cause__ = e
            else:
                if refused:
                    logger.error(f"Recipients refused: {ctx} | refused={refused}")
                    raise PermanentDeliveryError(
                        f"Recipients refused: {', '.join(refused)}", refused=refused
                    )
                logger.info(f"Email sent: {ctx} | message_id={message_id}")
                return message_id

            if not failure.is_transient:
                logger.error(f"Permanent SMTP failure: {ctx} | {failure}")
                raise failure

            if getattr(failure, "reconnect", False):
                with self._lock:
                    self._close_connection()

            if attempt == attempts:
                logger.error(f"SMTP send failed after {attempts} attempts: {ctx} | {failure}")
                raise failure

            if self.stop_event.is_set():
                logger.warning(f"SMTP send failed, shutdown requested: {ctx} | {failure}")
                raise failure

            delay = self.backoff.delay_for(attempt)
            logger.warning(f"SMTP send failed: {ctx} | {failure} | retrying in {delay:.1f}s")
            if delay > 0 and self.stop_event.wait(delay):
                logger.warning(f"Shutdown requested during backoff: {ctx}")
                raise failure

        raise TransientIOError("SMTP send loop exhausted")  # pragma: no cover

    def validate_connection(self) -> bool:
        """Test SMTP connection and authentication.

        Returns:
            True if connection successful, False otherwise.
        """
        try:
            logger.info("Testing SMTP connection...")
            self._get_connection()
            logger.info("SMTP connection test successful")
            return True

        except ExportServiceError as e:
            logger.error(f"SMTP connection test failed: {e}")
            return False

    def close(self) -> None:
        """Close SMTP session and cleanup resources."""
        with self._lock:
            self._close_connection()
            logger.debug("Mailer closed")

    def __enter__(self) -> Mailer:
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        """Context manager exit - close session."""
        self.close()


def _quietly_close(smtp: smtplib.SMTP) -> None:
    """QUIT an SMTP session, ignoring failures of a dead socket."""
    try:
        smtp.quit()
    except (smtplib.SMTPException, OSError) as e:
        logger.debug(f"Error closing SMTP session (non-critical): {e}")
        try:
            smtp.close()
        except OSError:
            pass
