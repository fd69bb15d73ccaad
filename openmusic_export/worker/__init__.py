"""Worker module for the playlist export service.

Contains the AMQP export consumer daemon.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from openmusic_export.worker.consumer import ConsumerState, ExportConsumer, JobOutcome

__all__ = ["ConsumerState", "ExportConsumer", "JobOutcome"]
