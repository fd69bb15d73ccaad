"""Configuration module for the playlist export service.

Loads and validates settings from environment variables or .env file.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from openmusic_export.config.settings import ExportConfig, load_config

__all__ = ["ExportConfig", "load_config"]
