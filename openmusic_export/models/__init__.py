"""Models module for the playlist export service.

Defines Pydantic v2 models for export jobs, playlist snapshots, SMTP
configuration and consumer statistics.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from openmusic_export.models.job import RETRY_COUNT_HEADER, ExportJob
from openmusic_export.models.playlist import Playlist, Song
from openmusic_export.models.smtp_config import SMTPConfig
from openmusic_export.models.stats import ConsumerStats

__all__ = [
    "ExportJob",
    "RETRY_COUNT_HEADER",
    "Playlist",
    "Song",
    "SMTPConfig",
    "ConsumerStats",
]
