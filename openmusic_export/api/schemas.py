"""API request and response schemas.

Pydantic models for API validation and serialization.

Version: 1.0.0
"""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field

EXPORT_ACCEPTED_MESSAGE = "Your request is being processed"


class ExportPlaylistRequest(BaseModel):
    """Request model for POST /export/playlists/{playlist_id}."""

    model_config = ConfigDict(extra="forbid", str_strip_whitespace=True)

    targetEmail: EmailStr = Field(
        ...,
        description="Address the playlist export is sent to",
    )


class ExportResponse(BaseModel):
    """Response model for an accepted export request."""

    status: Literal["success"] = Field(default="success", description="Request status")
    message: str = Field(default=EXPORT_ACCEPTED_MESSAGE, description="Status message")


class HealthResponse(BaseModel):
    """Response model for GET /health endpoint."""

    status: str = Field(description="Overall service status")
    db: str = Field(description="Catalog database status")
    broker: str = Field(description="Message broker status")
    version: str = Field(description="Service version")
    timestamp: datetime = Field(default_factory=lambda: datetime.now())


class ErrorResponse(BaseModel):
    """Standard error response model.

    ``fail`` marks a client error, ``error`` a server-side failure.
    """

    status: Literal["fail", "error"] = Field(description="Error kind")
    message: str = Field(description="Error description")
