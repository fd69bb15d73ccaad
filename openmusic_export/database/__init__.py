"""Database module for the playlist export service.

Contains catalog reads against PostgreSQL.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from openmusic_export.database.playlists import PlaylistReader

__all__ = ["PlaylistReader"]
