"""Export job producer.

Publishes export jobs to the durable export queue. Publishing is
fire-and-forget: persistent delivery on a durable queue is the only
guarantee, there are no publisher confirms.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from __future__ import annotations

import threading
from collections.abc import Callable

import pika
from pika.adapters.blocking_connection import BlockingChannel

from openmusic_export.broker.connection import BROKER_ERRORS, close_quietly, open_connection
from openmusic_export.broker.topology import (
    QueueTopology,
    build_properties,
    declare_export_queues,
)
from openmusic_export.config import ExportConfig
from openmusic_export.core.exceptions import (
    ExportServiceError,
    QueueUnavailableError,
    ValidationError,
)
from openmusic_export.core.logger import get_logger, log_context
from openmusic_export.models.job import ExportJob

logger = get_logger(__name__)


class ExportProducer:
    """Thread-safe publisher for export jobs.

    pika connections are not thread-safe, so every broker call happens
    under one lock. A dropped connection is re-established once per
    publish before giving up.

    Example:
        producer = ExportProducer(config)
        producer.init()
        producer.publish(ExportJob(playlistId="playlist-1", targetEmail="a@b.io"))
    """

    def __init__(
        self,
        config: ExportConfig,
        connection_factory: Callable[[], pika.BlockingConnection] | None = None,
    ) -> None:
        """Initialize the producer without connecting.

        Args:
            config: Export service configuration.
            connection_factory: Opens a broker connection (pika by default).
        """
        self.config = config
        self.topology = QueueTopology.from_config(config)
        self.queue_name = self.topology.queue
        self._connection_factory = connection_factory or (lambda: open_connection(config))

        self._connection: pika.BlockingConnection | None = None
        self._channel: BlockingChannel | None = None
        self._initialized = False
        self._lock = threading.Lock()

    def init(self) -> None:
        """Connect and declare the queue topology.

        Safe to call repeatedly; an open connection is kept.

        Raises:
            QueueUnavailableError: If the broker cannot be reached.
        """
        with self._lock:
            if self._is_open():
                return
            self._open()
            self._initialized = True
            logger.info(f"Producer ready on queue {self.queue_name}")

    def _is_open(self) -> bool:
        return bool(
            self._connection
            and self._connection.is_open
            and self._channel
            and self._channel.is_open
        )

    def _open(self) -> None:
        """Open a fresh connection and channel, replacing any previous one.

        Raises:
            QueueUnavailableError: If the broker cannot be reached.
            ExportConfigError: If an existing queue conflicts with the topology.
        """
        self._release()
        connection = None
        try:
            connection = self._connection_factory()
            channel = connection.channel()
            declare_export_queues(channel, self.topology)
        except ExportServiceError:
            close_quietly(connection, "connection")
            raise
        except BROKER_ERRORS as e:
            close_quietly(connection, "connection")
            raise QueueUnavailableError(
                f"Failed to open channel for {self.queue_name}: {e!r}",
                queue=self.queue_name,
            ) from e

        self._connection = connection
        self._channel = channel

    def _release(self) -> None:
        close_quietly(self._channel, "channel")
        close_quietly(self._connection, "connection")
        self._channel = None
        self._connection = None

    def publish(self, job: ExportJob) -> None:
        """Publish one export job.

        Args:
            job: Validated export job.

        Raises:
            ValidationError: If ``job`` is not an ExportJob.
            QueueUnavailableError: If the producer was never initialized or
                the broker stays unreachable after one reconnect.
        """
        if not isinstance(job, ExportJob):
            raise ValidationError("Only ExportJob instances can be published")

        body = job.to_message_body()
        properties = build_properties(job)
        ctx = log_context(
            "publish",
            job_id=properties.message_id,
            recipient=str(job.target_email),
            playlist=job.playlist_id,
        )

        with self._lock:
            if not self._initialized:
                raise QueueUnavailableError("Producer not initialized", queue=self.queue_name)

            for attempt in (1, 2):
                try:
                    if not self._is_open():
                        logger.warning(f"Broker connection lost, reconnecting: {ctx}")
                        self._open()
                    self._channel.basic_publish(
                        exchange="",
                        routing_key=self.queue_name,
                        body=body,
                        properties=properties,
                    )
                    logger.info(f"Job enqueued: {ctx}")
                    return
                except QueueUnavailableError:
                    logger.error(f"Broker unavailable: {ctx}")
                    raise
                except BROKER_ERRORS as e:
                    self._release()
                    if attempt == 2:
                        logger.error(f"Publish failed after reconnect: {ctx} | {e!r}")
                        raise QueueUnavailableError(
                            f"Failed to publish to {self.queue_name}: {e!r}",
                            queue=self.queue_name,
                        ) from e
                    logger.warning(f"Publish failed, reconnecting once: {ctx} | {e!r}")

    def health_check(self) -> bool:
        """Check that the broker connection is alive.

        Returns:
            True if the connection is open and serviceable, False otherwise.
        """
        with self._lock:
            if not self._is_open():
                return False
            try:
                # Services heartbeats on an otherwise idle connection
                self._connection.process_data_events(time_limit=0)
                return True
            except BROKER_ERRORS as e:
                logger.warning(f"Broker health check failed: {e!r}")
                self._release()
                return False

    def close(self) -> None:
        """Close the channel and the connection."""
        with self._lock:
            self._release()
            self._initialized = False
            logger.info("Producer closed")
