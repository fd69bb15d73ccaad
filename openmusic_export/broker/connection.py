"""AMQP connection helpers built on pika's BlockingConnection.

Version: 1.0.0
"""

from __future__ import annotations

import pika
from pika.exceptions import AMQPError

from openmusic_export.config import ExportConfig
from openmusic_export.core.exceptions import QueueUnavailableError
from openmusic_export.core.logger import get_logger

logger = get_logger(__name__)

# Errors meaning the broker connection or channel can no longer be trusted.
BROKER_ERRORS: tuple[type[Exception], ...] = (AMQPError, OSError)


def build_connection_parameters(config: ExportConfig) -> pika.URLParameters:
    """Build pika connection parameters from RABBITMQ_SERVER.

    A single TCP attempt is made per call; reconnect policies live in the
    producer and the consumer.
    """
    params = pika.URLParameters(config.RABBITMQ_SERVER)
    params.heartbeat = config.BROKER_HEARTBEAT_SECONDS
    params.connection_attempts = 1
    params.blocked_connection_timeout = 300
    return params


def open_connection(config: ExportConfig) -> pika.BlockingConnection:
    """Open a blocking connection to the broker.

    Raises:
        QueueUnavailableError: If the broker cannot be reached.
    """
    logger.debug(f"Connecting to broker: {config.get_masked_broker_url()}")
    try:
        return pika.BlockingConnection(build_connection_parameters(config))
    except BROKER_ERRORS as e:
        raise QueueUnavailableError(
            f"Cannot connect to broker {config.get_masked_broker_url()}: {e!r}",
            queue=config.EXPORT_QUEUE_NAME,
        ) from e


def close_quietly(resource, name: str) -> None:
    """Close a channel or connection, logging failures of a dead socket."""
    if resource is None:
        return
    try:
        if resource.is_open:
            resource.close()
    except BROKER_ERRORS as e:
        logger.debug(f"Error closing broker {name} (non-critical): {e!r}")
