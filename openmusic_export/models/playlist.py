"""Playlist snapshot models.

Read-only projection of a playlist and its songs, assembled per export
and serialized into the ``playlist.json`` attachment.

Author: OpenMusic
Created: 2025-11-02
Version: 1.0.0
"""

from __future__ import annotations

import json

from pydantic import BaseModel, ConfigDict, Field, field_validator


class Song(BaseModel):
    """Song entry of a playlist snapshot.

    Attributes:
        id: Song identifier.
        title: Song title.
        performer: Performing artist.
        year: Release year (optional).
        genre: Genre (optional).
        duration: Duration in seconds (optional).
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str = Field(..., description="Song ID")
    title: str = Field(..., description="Song title")
    performer: str = Field(..., description="Performer")
    year: int | None = Field(default=None, description="Release year")
    genre: str | None = Field(default=None, description="Genre")
    duration: int | None = Field(default=None, ge=0, description="Duration in seconds")


class Playlist(BaseModel):
    """Playlist snapshot with its songs ordered by title.

    Attributes:
        id: Playlist identifier.
        name: Playlist name.
        songs: Songs ordered by (title, id).
    """

    model_config = ConfigDict(from_attributes=True, frozen=True)

    id: str = Field(..., description="Playlist ID")
    name: str = Field(..., description="Playlist name")
    songs: list[Song] = Field(default_factory=list, description="Songs ordered by title")

    @field_validator("songs")
    @classmethod
    def order_songs(cls, v: list[Song]) -> list[Song]:
        """Order songs by title, then id.

        Attachment bytes must not depend on the database collation.
        """
        return sorted(v, key=lambda song: (song.title, song.id))

    def to_export_json(self) -> bytes:
        """Serialize the snapshot to the ``playlist.json`` attachment body."""
        document = {"playlist": self.model_dump(mode="json")}
        return json.dumps(document, ensure_ascii=False).encode("utf-8")
