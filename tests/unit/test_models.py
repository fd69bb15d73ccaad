"""Unit tests for export job, playlist and statistics models.

Author: OpenMusic
Version: 1.0.0
"""

from __future__ import annotations

import json

import pytest

from openmusic_export.core.exceptions import ErrorClass, ValidationError
from openmusic_export.models import RETRY_COUNT_HEADER, ConsumerStats, ExportJob, Playlist, Song


class TestExportJob:
    """Tests for ExportJob wire format."""

    def test_body_uses_wire_names(self):
        """Test body is {"playlistId", "targetEmail"} without retry metadata."""
        job = ExportJob(playlistId="playlist-1", targetEmail="user@example.com", retry_count=3)

        body = json.loads(job.to_message_body())

        assert body == {"playlistId": "playlist-1", "targetEmail": "user@example.com"}

    def test_populate_by_field_name(self):
        """Test job can be built from python field names."""
        job = ExportJob(playlist_id="playlist-1", target_email="user@example.com")

        assert job.playlist_id == "playlist-1"
        assert job.retry_count == 0

    def test_from_message_without_headers(self):
        """Test a fresh job has retry count 0."""
        job = ExportJob.from_message(
            b'{"playlistId": "playlist-1", "targetEmail": "user@example.com"}'
        )

        assert job.playlist_id == "playlist-1"
        assert job.target_email == "user@example.com"
        assert job.retry_count == 0

    @pytest.mark.parametrize("raw", [2, "2", b"2"])
    def test_from_message_reads_retry_header(self, raw):
        """Test retry count header accepts int, str and bytes values."""
        job = ExportJob.from_message(
            b'{"playlistId": "p", "targetEmail": "user@example.com"}',
            {RETRY_COUNT_HEADER: raw},
        )

        assert job.retry_count == 2

    def test_invalid_email_is_permanent_validation_error(self):
        """Test a malformed address is rejected as permanent."""
        with pytest.raises(ValidationError) as exc_info:
            ExportJob.from_message(b'{"playlistId": "p", "targetEmail": "not-an-email"}')

        assert exc_info.value.error_class is ErrorClass.PERMANENT
        assert "targetEmail" in exc_info.value.fields

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b"\xff\xfe",
            b'["playlistId", "targetEmail"]',
            b'{"targetEmail": "user@example.com"}',
            b'{"playlistId": "", "targetEmail": "user@example.com"}',
        ],
    )
    def test_malformed_bodies_rejected(self, body):
        """Test malformed payloads raise ValidationError."""
        with pytest.raises(ValidationError):
            ExportJob.from_message(body)

    @pytest.mark.parametrize("raw", ["abc", -1, None])
    def test_malformed_retry_header_rejected(self, raw):
        """Test negative or non-integer retry counts are rejected."""
        with pytest.raises(ValidationError) as exc_info:
            ExportJob.from_message(
                b'{"playlistId": "p", "targetEmail": "user@example.com"}',
                {RETRY_COUNT_HEADER: raw},
            )

        assert exc_info.value.fields == [RETRY_COUNT_HEADER]

    def test_next_attempt_increments_retry_count(self):
        """Test next_attempt keeps the payload and bumps the count."""
        job = ExportJob(playlistId="playlist-1", targetEmail="user@example.com")

        retried = job.next_attempt().next_attempt()

        assert retried.retry_count == 2
        assert retried.to_message_body() == job.to_message_body()
        assert retried.message_headers() == {RETRY_COUNT_HEADER: 2}
        assert job.message_headers() == {}


class TestPlaylist:
    """Tests for the playlist snapshot."""

    def test_songs_ordered_by_title(self):
        """Test songs [B, A] are serialized as [A, B]."""
        playlist = Playlist(
            id="playlist-1",
            name="Mix",
            songs=[
                Song(id="s2", title="B", performer="X"),
                Song(id="s1", title="A", performer="Y"),
            ],
        )

        exported = json.loads(playlist.to_export_json())

        assert [song["title"] for song in exported["playlist"]["songs"]] == ["A", "B"]

    def test_equal_titles_ordered_by_id(self):
        """Test ties on title are broken by song id."""
        playlist = Playlist(
            id="p",
            name="Mix",
            songs=[
                Song(id="s9", title="Same", performer="X"),
                Song(id="s1", title="Same", performer="Y"),
            ],
        )

        assert [song.id for song in playlist.songs] == ["s1", "s9"]

    def test_export_document_shape(self, sample_playlist):
        """Test attachment document wraps the snapshot in "playlist"."""
        document = json.loads(sample_playlist.to_export_json())

        assert document["playlist"]["id"] == "playlist-1"
        assert document["playlist"]["name"] == "Road Trip"
        assert document["playlist"]["songs"][0] == {
            "id": "song-1",
            "title": "Africa",
            "performer": "Toto",
            "year": 1982,
            "genre": "Pop",
            "duration": None,
        }

    def test_export_bytes_are_deterministic(self, playlist_header_row, song_rows):
        """Test identical snapshots serialize to identical bytes."""
        first = Playlist(
            **playlist_header_row, songs=[Song.model_validate(r) for r in song_rows]
        )
        second = Playlist(
            **playlist_header_row,
            songs=[Song.model_validate(r) for r in reversed(song_rows)],
        )

        assert first.to_export_json() == second.to_export_json()

    def test_non_ascii_names_kept_verbatim(self):
        """Test UTF-8 text is not escaped in the attachment."""
        playlist = Playlist(id="p", name="Lagu Santai ☕", songs=[])

        assert "Lagu Santai ☕".encode() in playlist.to_export_json()


class TestConsumerStats:
    """Tests for consumer statistics."""

    def test_success_rate_empty(self):
        """Test success rate is 0 before any job finished."""
        assert ConsumerStats().success_rate == 0.0

    def test_success_rate_ignores_retries(self):
        """Test retried jobs are not finished jobs."""
        stats = ConsumerStats(sent_count=3, dead_lettered_count=1, retried_count=10)

        assert stats.success_rate == 75.0
