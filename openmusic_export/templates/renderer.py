"""Jinja2 template renderer for export emails.

Renders the HTML and plain-text bodies of the playlist export email.

Version: 1.0.0
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, TemplateNotFound, select_autoescape

from openmusic_export.core.exceptions import TemplateRenderError
from openmusic_export.core.logger import get_logger

logger = get_logger(__name__)

PLAYLIST_EXPORT_TEMPLATE = "playlist_export"

_DEFAULT_TEMPLATE_DIR = Path(__file__).parent


class TemplateRenderer:
    """Jinja2 template renderer for email templates.

    Each template comes as an HTML variant and an optional plain-text
    variant (``<name>.html`` / ``<name>.txt``).
    """

    def __init__(self, template_dir: str | Path | None = None) -> None:
        """Initialize template renderer.

        Args:
            template_dir: Path to templates directory (package templates if None).

        Raises:
            TemplateRenderError: If the template directory does not exist.
        """
        self.template_dir = Path(template_dir) if template_dir else _DEFAULT_TEMPLATE_DIR

        if not self.template_dir.is_dir():
            raise TemplateRenderError(
                f"Template directory not found: {self.template_dir}"
            )

        self.env = self._init_jinja_env()
        logger.info(f"Template renderer initialized: {self.template_dir}")

    def _init_jinja_env(self) -> Environment:
        """Initialize Jinja2 environment with custom filters."""
        env = Environment(
            loader=FileSystemLoader(self.template_dir),
            autoescape=select_autoescape(["html"], default_for_string=True),
            trim_blocks=True,
            lstrip_blocks=True,
        )

        env.filters["format_duration"] = self._format_duration

        return env

    def render_html(self, template: str, context: dict[str, Any]) -> str:
        """Render HTML email template.

        Args:
            template: Template base name (without extension).
            context: Dictionary with template variables.

        Returns:
            Rendered HTML string.

        Raises:
            TemplateRenderError: If template not found or rendering fails.
        """
        template_name = f"{template}.html"

        try:
            rendered = self.env.get_template(template_name).render(**context)
            logger.debug(f"HTML template rendered: {len(rendered)} bytes")
            return rendered

        except TemplateNotFound:
            logger.error(f"HTML template not found: {template_name}")
            raise TemplateRenderError(
                f"Template not found: {template_name}",
                template_name=template_name,
            ) from None

        except Exception as e:
            logger.error(f"Failed to render HTML template: {e}")
            raise TemplateRenderError(
                f"Failed to render {template_name}: {e}",
                template_name=template_name,
            ) from e

    def render_text(self, template: str, context: dict[str, Any]) -> str:
        """Render plain-text email template.

        Falls back to a generated body when the .txt template is missing.

        Args:
            template: Template base name (without extension).
            context: Dictionary with template variables.

        Returns:
            Rendered plain-text string.

        Raises:
            TemplateRenderError: If rendering fails.
        """
        template_name = f"{template}.txt"

        if not self.template_exists(template, "text"):
            logger.debug(f"Text template not found: {template_name}, using fallback")
            return self._generate_fallback_text(context)

        try:
            return self.env.get_template(template_name).render(**context)

        except Exception as e:
            logger.error(f"Failed to render text template: {e}")
            raise TemplateRenderError(
                f"Failed to render {template_name}: {e}",
                template_name=template_name,
            ) from e

    def _generate_fallback_text(self, context: dict[str, Any]) -> str:
        """Generate plain-text fallback when the .txt template doesn't exist."""
        playlist = context.get("playlist") or {}
        name = playlist.get("name", "your playlist")
        return (
            "Hello,\n\n"
            f"Attached is the JSON export of {name}.\n\n"
            "Thank you for using OpenMusic!"
        )

    @staticmethod
    def _format_duration(seconds: int | None) -> str:
        """Jinja2 filter rendering a duration in seconds as m:ss."""
        if seconds is None:
            return "-"
        minutes, secs = divmod(int(seconds), 60)
        return f"{minutes}:{secs:02d}"

    def template_exists(self, template: str, format_type: str = "html") -> bool:
        """Check if a template file exists.

        Args:
            template: Template base name.
            format_type: "html" or "text".

        Returns:
            True if template file exists, False otherwise.
        """
        ext = "html" if format_type == "html" else "txt"
        return (self.template_dir / f"{template}.{ext}").exists()
