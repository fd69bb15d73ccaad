"""Export worker - AMQP consumer and email delivery daemon.

Consumes export jobs one at a time, loads the playlist snapshot, emails it
as a JSON attachment and settles the delivery:

- success: ack
- transient failure: re-publish with ``x-retry-count + 1`` then ack, or
  dead-letter once the retry budget is spent
- permanent failure: dead-letter (nack without requeue)
- broker failure: leave unacknowledged and reconnect

The send runs in a helper thread so the broker connection keeps answering
heartbeats during slow SMTP exchanges. The connection lifecycle is an
explicit state machine driven by a supervising loop; SIGTERM/SIGINT trigger
a graceful shutdown bounded by SHUTDOWN_GRACE_SECONDS.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from __future__ import annotations

import signal
import sys
import threading
import time
from collections.abc import Callable
from enum import Enum
from typing import Any

import pika
from pika.adapters.blocking_connection import BlockingChannel
from pika.spec import Basic, BasicProperties

from openmusic_export.broker.connection import BROKER_ERRORS, close_quietly, open_connection
from openmusic_export.broker.topology import (
    QueueTopology,
    build_properties,
    declare_export_queues,
    retry_delay_ms,
)
from openmusic_export.clients.smtp import Mailer
from openmusic_export.config import ExportConfig, load_config
from openmusic_export.core.backoff import ExponentialBackoff
from openmusic_export.core.exceptions import (
    ExportConfigError,
    ExportServiceError,
    TransientIOError,
    ValidationError,
)
from openmusic_export.core.logger import get_logger, log_context, setup_logging
from openmusic_export.database.playlists import PlaylistReader
from openmusic_export.models.job import ExportJob
from openmusic_export.models.stats import ConsumerStats

logger = get_logger(__name__)


class ConsumerState(str, Enum):
    """Lifecycle states of the consumer."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDLE = "idle"
    PROCESSING = "processing"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


class JobOutcome(str, Enum):
    """How a delivery was settled."""

    ACKED = "acked"
    RETRIED = "retried"
    DEAD_LETTERED = "dead_lettered"
    ABANDONED = "abandoned"


class ExportConsumer:
    """Playlist export consumer daemon.

    Processes one job at a time (prefetch 1). Reader, mailer, connection
    factory, stop event and clock can be injected for tests.
    """

    def __init__(
        self,
        config: ExportConfig,
        reader: PlaylistReader | None = None,
        mailer: Mailer | None = None,
        connection_factory: Callable[[], pika.BlockingConnection] | None = None,
        stop_event: threading.Event | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize consumer components.

        Args:
            config: Export service configuration.
            reader: Catalog reader (built from config if None).
            mailer: Export mailer (built from config if None).
            connection_factory: Opens a broker connection (pika by default).
            stop_event: Event signalling shutdown.
            clock: Monotonic clock used for the shutdown grace period.

        Raises:
            ExportServiceError: If the catalog pool or templates cannot be set up.
        """
        self.config = config
        self._stop_event = stop_event or threading.Event()
        self.reader = reader or PlaylistReader(config)
        self.mailer = mailer or Mailer.from_config(config, stop_event=self._stop_event)
        self.topology = QueueTopology.from_config(config)
        self.stats = ConsumerStats()

        self._connection_factory = connection_factory or (lambda: open_connection(config))
        self._clock = clock
        self._shutdown_requested_at: float | None = None

        self._connection: pika.BlockingConnection | None = None
        self._channel: BlockingChannel | None = None
        self._connected_once = False
        self._state = ConsumerState.DISCONNECTED

        self.connect_backoff = ExponentialBackoff(
            attempts=config.BROKER_CONNECT_ATTEMPTS,
            base_seconds=config.BROKER_CONNECT_BACKOFF_SECONDS,
            max_seconds=config.BROKER_CONNECT_BACKOFF_MAX_SECONDS,
        )

        logger.info("Export consumer initialized")

    # =========================================================================
    # State
    # =========================================================================
    @property
    def state(self) -> ConsumerState:
        return self._state

    def _set_state(self, state: ConsumerState) -> None:
        if state is not self._state:
            logger.debug(f"Consumer state: {self._state.value} -> {state.value}")
            self._state = state

    @property
    def shutdown_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_shutdown(self) -> None:
        """Ask the consumer to stop; the in-flight job gets a grace period."""
        if self._shutdown_requested_at is None:
            self._shutdown_requested_at = self._clock()
        self._stop_event.set()

    def _grace_expired(self) -> bool:
        """Whether a shutdown was requested longer ago than the grace period."""
        if not self.shutdown_requested:
            return False
        if self._shutdown_requested_at is None:
            self._shutdown_requested_at = self._clock()
        elapsed = self._clock() - self._shutdown_requested_at
        return elapsed >= self.config.SHUTDOWN_GRACE_SECONDS

    def setup_signal_handlers(self) -> None:
        """Install SIGTERM/SIGINT handlers (main thread only)."""
        signal.signal(signal.SIGTERM, self._handle_shutdown)
        signal.signal(signal.SIGINT, self._handle_shutdown)

    def _handle_shutdown(self, signum: int, frame: Any) -> None:
        """Handle shutdown signals gracefully."""
        logger.info(f"Received shutdown signal ({signum}). Stopping gracefully...")
        self.request_shutdown()

    # =========================================================================
    # Supervising loop
    # =========================================================================
    def run(self) -> None:
        """Connect, consume and reconnect until shutdown is requested."""
        logger.info("Starting export consumer loop...")
        logger.info(
            f"Consumer Configuration: "
            f"queue={self.topology.queue} | "
            f"max_retries={self.config.EXPORT_MAX_RETRIES} | "
            f"retry_delay={self.config.EXPORT_RETRY_DELAY_SECONDS}s | "
            f"connect_attempts={self.config.BROKER_CONNECT_ATTEMPTS} | "
            f"grace={self.config.SHUTDOWN_GRACE_SECONDS}s"
        )

        try:
            while not self.shutdown_requested:
                if self._state is ConsumerState.DISCONNECTED:
                    if not self.connect():
                        cooldown = self.config.BROKER_RESTART_COOLDOWN_SECONDS
                        logger.error(
                            f"Broker unreachable after {self.connect_backoff.attempts} attempts, "
                            f"next connect cycle in {cooldown:.0f}s"
                        )
                        self._stop_event.wait(cooldown)
                        continue
                self._consume()
        finally:
            self.shutdown()

    def connect(self) -> bool:
        """Run one connect cycle with exponential backoff.

        On success the topology is declared, prefetch is 1, publisher
        confirms are on and the state is IDLE.

        Returns:
            True if connected, False if the cycle was exhausted or
            interrupted by a shutdown request.

        Raises:
            ExportConfigError: If an existing queue conflicts with the topology.
        """
        self._set_state(ConsumerState.CONNECTING)
        attempts = self.connect_backoff.attempts

        for attempt in range(1, attempts + 1):
            if self.shutdown_requested:
                break
            connection = None
            try:
                connection = self._connection_factory()
                channel = connection.channel()
                declare_export_queues(channel, self.topology)
                channel.basic_qos(prefetch_count=1)
                channel.confirm_delivery()
            except ExportConfigError:
                close_quietly(connection, "connection")
                self._set_state(ConsumerState.DISCONNECTED)
                raise
            except (ExportServiceError, *BROKER_ERRORS) as e:
                close_quietly(connection, "connection")
                logger.warning(f"Broker connect attempt {attempt}/{attempts} failed: {e}")
                if attempt < attempts:
                    self._stop_event.wait(self.connect_backoff.delay_for(attempt))
                continue

            self._connection = connection
            self._channel = channel
            if self._connected_once:
                self.stats.reconnect_count += 1
            self._connected_once = True
            self._set_state(ConsumerState.IDLE)
            logger.info(f"Connected to broker, consuming {self.topology.queue}")
            return True

        self._set_state(ConsumerState.DISCONNECTED)
        return False

    def _consume(self) -> None:
        """Consume deliveries until shutdown or a broker failure."""
        try:
            for method, properties, body in self._channel.consume(
                self.topology.queue,
                inactivity_timeout=self.config.CONSUMER_POLL_SECONDS,
            ):
                if self.shutdown_requested:
                    break
                if method is None:
                    continue
                self.handle_delivery(self._channel, method, properties, body)
                if self._state is ConsumerState.DISCONNECTED:
                    return
        except BROKER_ERRORS as e:
            logger.error(f"Broker connection lost: {e!r}")
            self._discard_connection()
            self._set_state(ConsumerState.DISCONNECTED)

    def _discard_connection(self) -> None:
        close_quietly(self._channel, "channel")
        close_quietly(self._connection, "connection")
        self._channel = None
        self._connection = None

    # =========================================================================
    # Job handling
    # =========================================================================
    def handle_delivery(
        self,
        channel: BlockingChannel,
        method: Basic.Deliver,
        properties: BasicProperties,
        body: bytes,
    ) -> JobOutcome:
        """Process one delivery and settle it.

        Args:
            channel: Channel the delivery arrived on.
            method: Delivery method frame.
            properties: Message properties.
            body: Raw message body.

        Returns:
            How the delivery was settled.
        """
        self._set_state(ConsumerState.PROCESSING)
        job_id = properties.message_id or f"tag-{method.delivery_tag}"

        try:
            outcome = self._process(channel, method.delivery_tag, properties, body, job_id)
        except BROKER_ERRORS as e:
            # Unsettled deliveries return to the queue when the channel closes
            logger.error(f"[{job_id}] Broker failure while settling job: {e!r}")
            self.stats.abandoned_count += 1
            self._discard_connection()
            self._set_state(ConsumerState.DISCONNECTED)
            return JobOutcome.ABANDONED

        if self._state is ConsumerState.PROCESSING:
            self._set_state(ConsumerState.IDLE)
        return outcome

    def _process(
        self,
        channel: BlockingChannel,
        delivery_tag: int,
        properties: BasicProperties,
        body: bytes,
        job_id: str,
    ) -> JobOutcome:
        try:
            job = ExportJob.from_message(body, properties.headers)
        except ValidationError as e:
            ctx = log_context("process_job", job_id=job_id)
            return self._dead_letter(channel, delivery_tag, ctx, e)

        ctx = log_context(
            "process_job",
            job_id=job_id,
            recipient=str(job.target_email),
            playlist=job.playlist_id,
            attempt=job.retry_count + 1,
        )

        if self.shutdown_requested:
            return self._abandon(ctx, "shutdown requested before processing")

        logger.info(f"Starting: {ctx}")
        finished, error = self._run_export(channel, job)
        if not finished:
            return self._abandon(ctx, "shutdown grace period expired with the send in flight")

        if error is None:
            # A send the server accepted is always acknowledged.
            channel.basic_ack(delivery_tag=delivery_tag)
            self.stats.sent_count += 1
            logger.info(f"COMPLETED: {ctx}")
            return JobOutcome.ACKED

        if not isinstance(error, ExportServiceError):
            logger.error(f"Unexpected error: {ctx} | {error!r}", exc_info=error)
            unexpected = error
            error = TransientIOError(f"Unexpected error: {unexpected!r}")
            error.__cause__ = unexpected

        if not error.is_transient:
            return self._dead_letter(channel, delivery_tag, ctx, error)

        if job.retry_count >= self.config.EXPORT_MAX_RETRIES:
            logger.error(f"Retries exhausted ({self.config.EXPORT_MAX_RETRIES}): {ctx}")
            return self._dead_letter(channel, delivery_tag, ctx, error)

        return self._retry(channel, delivery_tag, job, body, job_id, ctx, error)

    def _run_export(
        self, channel: BlockingChannel, job: ExportJob
    ) -> tuple[bool, Exception | None]:
        """Run the export in a helper thread while servicing the connection.

        BlockingConnection answers heartbeats only from inside pika calls, so
        this thread keeps processing data events until the export returns.
        After a shutdown request it stops waiting once the grace period is
        over; the helper thread is a daemon and dies with the process.

        Returns:
            ``(finished, error)``. ``finished`` is False when the grace period
            ran out first; ``error`` is what the export raised, if anything.
        """
        done = threading.Event()
        result: dict[str, Exception] = {}

        def target() -> None:
            try:
                self._export(job)
            except Exception as e:
                result["error"] = e
            finally:
                done.set()

        worker = threading.Thread(target=target, name=f"export-{job.playlist_id}", daemon=True)
        worker.start()

        while not done.wait(self.config.CONSUMER_POLL_SECONDS):
            if self._grace_expired():
                return False, None
            channel.connection.process_data_events(time_limit=0)

        return True, result.get("error")

    def _export(self, job: ExportJob) -> None:
        """Read the current playlist snapshot and email it."""
        playlist = self.reader.fetch(job.playlist_id)
        self.mailer.send_export(str(job.target_email), playlist.to_export_json())

    def _retry(
        self,
        channel: BlockingChannel,
        delivery_tag: int,
        job: ExportJob,
        body: bytes,
        job_id: str,
        ctx: str,
        error: ExportServiceError,
    ) -> JobOutcome:
        """Re-publish the job with an incremented retry count, then ack."""
        next_job = job.next_attempt()
        delay_ms = retry_delay_ms(self.config.EXPORT_RETRY_DELAY_SECONDS, job.retry_count)
        routing_key = self.topology.retry_queue(delay_ms) if delay_ms else self.topology.queue

        # Confirmed publish: raises if the broker does not take the copy
        channel.basic_publish(
            exchange="",
            routing_key=routing_key,
            body=body,
            properties=build_properties(next_job, message_id=job_id),
        )
        channel.basic_ack(delivery_tag=delivery_tag)

        self.stats.retried_count += 1
        logger.warning(
            f"SCHEDULED RETRY: {ctx} | "
            f"error_class={error.error_class.value} | "
            f"retry {next_job.retry_count}/{self.config.EXPORT_MAX_RETRIES} | "
            f"delay_ms={delay_ms} | error={error}"
        )
        return JobOutcome.RETRIED

    def _dead_letter(
        self,
        channel: BlockingChannel,
        delivery_tag: int,
        ctx: str,
        error: ExportServiceError,
    ) -> JobOutcome:
        channel.basic_nack(delivery_tag=delivery_tag, requeue=False)
        self.stats.dead_lettered_count += 1
        logger.error(
            f"DEAD-LETTERED: {ctx} | "
            f"error_class={error.error_class.value} | "
            f"error={type(error).__name__}: {error}"
        )
        return JobOutcome.DEAD_LETTERED

    def _abandon(self, ctx: str, reason: str) -> JobOutcome:
        self.stats.abandoned_count += 1
        logger.warning(f"ABANDONED (left unacknowledged): {ctx} | {reason}")
        return JobOutcome.ABANDONED

    # =========================================================================
    # Shutdown
    # =========================================================================
    def shutdown(self) -> None:
        """Release resources in reverse acquisition order."""
        if self._state is ConsumerState.STOPPED:
            return

        self._set_state(ConsumerState.SHUTTING_DOWN)
        logger.info("Shutting down export consumer...")
        logger.info("=" * 80)

        if self._channel is not None and self._channel.is_open:
            try:
                self._channel.cancel()
            except BROKER_ERRORS as e:
                logger.debug(f"Error cancelling consumer (non-critical): {e!r}")

        self._discard_connection()
        self.reader.close()
        self.mailer.close()

        self._set_state(ConsumerState.STOPPED)
        self._print_stats()
        logger.info("Export consumer stopped cleanly")
        logger.info("=" * 80)

    def _print_stats(self) -> None:
        """Print consumer statistics on shutdown."""
        logger.info("Export Consumer Statistics:")
        logger.info(f"   Successfully sent: {self.stats.sent_count}")
        logger.info(f"   Scheduled for retry: {self.stats.retried_count}")
        logger.info(f"   Dead-lettered: {self.stats.dead_lettered_count}")
        logger.info(f"   Abandoned: {self.stats.abandoned_count}")
        logger.info(f"   Reconnects: {self.stats.reconnect_count}")
        logger.info(f"   Success rate: {self.stats.success_rate:.1f}%")


def main() -> int:
    """Main entry point for the worker process.

    Returns:
        Process exit code.
    """
    try:
        config = load_config()
    except ExportConfigError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    setup_logging(
        log_dir=config.LOG_DIR,
        log_level=config.LOG_LEVEL,
        file_level="DEBUG",
        console_level=config.LOG_LEVEL,
        enable_file=config.LOG_TO_FILE,
        settings=config,
        component="worker",
    )

    try:
        consumer = ExportConsumer(config)
        consumer.setup_signal_handlers()
        consumer.run()
    except ExportServiceError as e:
        logger.error(f"Export Service Error: {e}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
