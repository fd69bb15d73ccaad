"""Export job model and queue wire format.

An export job travels as a UTF-8 JSON body ``{"playlistId", "targetEmail"}``.
Its retry count is not part of the body: it rides in the ``x-retry-count``
message header so re-published copies keep a byte-identical payload.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic import ValidationError as PydanticValidationError

from openmusic_export.core.exceptions import ValidationError

RETRY_COUNT_HEADER = "x-retry-count"


class ExportJob(BaseModel):
    """Request to email a playlist export.

    Attributes:
        playlist_id: Playlist to export (wire name ``playlistId``).
        target_email: Recipient address (wire name ``targetEmail``).
        retry_count: Number of times the job has been re-published.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        frozen=True,
        str_strip_whitespace=True,
    )

    playlist_id: str = Field(..., alias="playlistId", min_length=1, max_length=100)
    target_email: EmailStr = Field(..., alias="targetEmail")
    retry_count: int = Field(default=0, ge=0, exclude=True)

    def to_message_body(self) -> bytes:
        """Serialize the job to its queue body."""
        return json.dumps(self.model_dump(by_alias=True)).encode("utf-8")

    def message_headers(self) -> dict[str, int]:
        """AMQP headers carrying the retry metadata."""
        if not self.retry_count:
            return {}
        return {RETRY_COUNT_HEADER: self.retry_count}

    def next_attempt(self) -> ExportJob:
        """Copy of the job with the retry count incremented by one."""
        return self.model_copy(update={"retry_count": self.retry_count + 1})

    @classmethod
    def from_message(
        cls,
        body: bytes,
        headers: Mapping[str, Any] | None = None,
    ) -> ExportJob:
        """Parse a queue message into a job.

        Args:
            body: Raw message body.
            headers: AMQP headers of the delivery, if any.

        Returns:
            Validated export job.

        Raises:
            ValidationError: If the body or the retry header is malformed.
        """
        try:
            payload = json.loads(body.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ValidationError(f"Job body is not UTF-8 JSON: {e}") from e

        if not isinstance(payload, dict):
            raise ValidationError("Job body must be a JSON object")

        retry_count = _parse_retry_count(headers)

        try:
            return cls.model_validate({**payload, "retry_count": retry_count})
        except PydanticValidationError as e:
            fields = [str(err["loc"][0]) for err in e.errors() if err["loc"]]
            raise ValidationError(
                f"Invalid export job: {e.error_count()} error(s) in {', '.join(fields)}",
                fields=fields,
            ) from e


def _parse_retry_count(headers: Mapping[str, Any] | None) -> int:
    """Read the retry count header, defaulting to 0 when absent."""
    if not headers or RETRY_COUNT_HEADER not in headers:
        return 0

    raw = headers[RETRY_COUNT_HEADER]
    if isinstance(raw, bytes):
        raw = raw.decode("ascii", errors="replace")

    try:
        value = int(raw)
    except (TypeError, ValueError):
        raise ValidationError(
            f"Header {RETRY_COUNT_HEADER} is not an integer: {raw!r}",
            fields=[RETRY_COUNT_HEADER],
        ) from None

    if value < 0:
        raise ValidationError(
            f"Header {RETRY_COUNT_HEADER} cannot be negative",
            fields=[RETRY_COUNT_HEADER],
        )
    return value
