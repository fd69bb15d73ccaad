"""Broker module for the playlist export service.

AMQP queue topology, connection helpers and the export job producer.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from openmusic_export.broker.connection import (
    BROKER_ERRORS,
    build_connection_parameters,
    open_connection,
)
from openmusic_export.broker.producer import ExportProducer
from openmusic_export.broker.topology import (
    QueueTopology,
    build_properties,
    declare_export_queues,
    retry_delay_ms,
)

__all__ = [
    "BROKER_ERRORS",
    "build_connection_parameters",
    "open_connection",
    "ExportProducer",
    "QueueTopology",
    "build_properties",
    "declare_export_queues",
    "retry_delay_ms",
]
