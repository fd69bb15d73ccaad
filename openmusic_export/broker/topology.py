"""Export queue topology and message properties.

The main queue dead-letters into ``<queue>.dead``. Retry copies wait in a
delay queue ``<queue>.retry.<ms>`` whose queue-level TTL is the retry delay,
then flow back to the main queue. Every message in a delay queue shares
the same TTL, so expiry order matches publish order. Producer and consumer
declare the same arguments, so the declarations are idempotent whichever
side starts first.

Version: 1.0.0
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Any

import pika
from pika.adapters.blocking_connection import BlockingChannel
from pika.exceptions import ChannelClosedByBroker

from openmusic_export.config import ExportConfig
from openmusic_export.core.exceptions import ExportConfigError
from openmusic_export.core.logger import get_logger
from openmusic_export.models.job import ExportJob

logger = get_logger(__name__)

DEAD_LETTER_SUFFIX = ".dead"
RETRY_SUFFIX = ".retry"
JSON_CONTENT_TYPE = "application/json"
PERSISTENT_DELIVERY_MODE = 2
PRECONDITION_FAILED = 406

# One day; bounds the doubling delay of late retries.
MAX_RETRY_DELAY_MS = 86_400_000


def retry_delay_ms(base_seconds: int, retry_count: int) -> int:
    """Delay before a job that already failed ``retry_count`` times runs again.

    Doubles with every retry: base, 2*base, 4*base... capped at one day.
    """
    if base_seconds <= 0:
        return 0
    return min(base_seconds * 1000 * 2**retry_count, MAX_RETRY_DELAY_MS)


@dataclass(frozen=True)
class QueueTopology:
    """Names of the queues backing one export queue.

    Attributes:
        queue: Main export queue.
        retry_delays_ms: Delay of each retry tier, one delay queue per tier.
    """

    queue: str
    retry_delays_ms: tuple[int, ...] = ()

    @classmethod
    def from_config(cls, config: ExportConfig) -> QueueTopology:
        """Topology with one delay queue per distinct retry delay."""
        delays = {
            retry_delay_ms(config.EXPORT_RETRY_DELAY_SECONDS, retry_count)
            for retry_count in range(config.EXPORT_MAX_RETRIES)
        }
        delays.discard(0)
        return cls(config.EXPORT_QUEUE_NAME, tuple(sorted(delays)))

    @property
    def dead_letter_queue(self) -> str:
        return f"{self.queue}{DEAD_LETTER_SUFFIX}"

    def retry_queue(self, delay_ms: int) -> str:
        """Delay queue holding retry copies for ``delay_ms`` milliseconds."""
        return f"{self.queue}{RETRY_SUFFIX}.{delay_ms}"


def _declare(channel: BlockingChannel, queue: str, arguments: dict[str, Any] | None) -> None:
    try:
        channel.queue_declare(queue=queue, durable=True, arguments=arguments)
    except ChannelClosedByBroker as e:
        if e.reply_code != PRECONDITION_FAILED:
            raise
        # Retrying cannot help: the existing queue must be migrated first.
        raise ExportConfigError(
            f"Queue {queue} already exists with different arguments ({e.reply_text}). "
            f"Drain and delete it, or set its dead-letter routing through a broker policy."
        ) from e


def declare_export_queues(channel: BlockingChannel, topology: QueueTopology) -> QueueTopology:
    """Declare the export, dead-letter and delay queues.

    Args:
        channel: Open channel.
        topology: Queues to declare.

    Returns:
        The declared topology.

    Raises:
        ExportConfigError: If a queue exists with conflicting arguments.
    """
    _declare(channel, topology.dead_letter_queue, None)
    for delay_ms in topology.retry_delays_ms:
        _declare(
            channel,
            topology.retry_queue(delay_ms),
            {
                "x-message-ttl": delay_ms,
                "x-dead-letter-exchange": "",
                "x-dead-letter-routing-key": topology.queue,
            },
        )
    _declare(
        channel,
        topology.queue,
        {
            "x-dead-letter-exchange": "",
            "x-dead-letter-routing-key": topology.dead_letter_queue,
        },
    )

    logger.debug(
        f"Queue topology declared: {topology.queue} "
        f"(dead={topology.dead_letter_queue}, retry_delays_ms={list(topology.retry_delays_ms)})"
    )
    return topology


def build_properties(job: ExportJob, message_id: str | None = None) -> pika.BasicProperties:
    """Build persistent JSON message properties for a job.

    Args:
        job: Job being published (its retry count becomes a header).
        message_id: Message id to keep across retries (new uuid if None).
    """
    return pika.BasicProperties(
        content_type=JSON_CONTENT_TYPE,
        delivery_mode=PERSISTENT_DELIVERY_MODE,
        message_id=message_id or uuid.uuid4().hex,
        headers=job.message_headers() or None,
    )
