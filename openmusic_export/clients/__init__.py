"""Clients module for the playlist export service.

Contains integrations with external services like SMTP servers.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from openmusic_export.clients.smtp import Mailer, classify_smtp_error, export_context

__all__ = ["Mailer", "classify_smtp_error", "export_context"]
