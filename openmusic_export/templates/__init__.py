"""Templates module for the playlist export service.

Contains the Jinja2 renderer and the export email templates.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from openmusic_export.templates.renderer import PLAYLIST_EXPORT_TEMPLATE, TemplateRenderer

__all__ = ["TemplateRenderer", "PLAYLIST_EXPORT_TEMPLATE"]
