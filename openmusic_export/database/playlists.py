"""Playlist reader for the catalog PostgreSQL database.

Loads playlist snapshots for export and verifies playlist ownership for
the API.

Features:
- Thread-safe connection pooling with dead-connection replacement
- Bounded wait when the pool is exhausted
- Retry decorator for connection-level failures
- Header and song queries in one read-only transaction

Author: OpenMusic
Version: 1.0.0
"""

from __future__ import annotations

import time
from collections.abc import Callable
from functools import wraps
from typing import Any, TypeVar

import psycopg2
from psycopg2 import pool
from psycopg2.extras import RealDictCursor
from pydantic import ValidationError as PydanticValidationError

from openmusic_export.config import ExportConfig
from openmusic_export.core.exceptions import (
    CatalogError,
    ExportServiceError,
    ForbiddenError,
    NotFoundError,
    TransientIOError,
)
from openmusic_export.core.logger import get_logger
from openmusic_export.models.playlist import Playlist, Song

logger = get_logger(__name__)

T = TypeVar("T")

_POOL_WAIT_INTERVAL = 0.1

PLAYLIST_QUERY = """
    SELECT playlists.id, playlists.name
    FROM playlists
    WHERE playlists.id = %s
"""

SONGS_QUERY = """
    SELECT songs.id, songs.title, songs.performer,
           songs.year, songs.genre, songs.duration
    FROM playlist_songs
    JOIN songs ON playlist_songs.song_id = songs.id
    WHERE playlist_songs.playlist_id = %s
    ORDER BY songs.title, songs.id
"""

OWNER_QUERY = "SELECT owner FROM playlists WHERE id = %s"


# =============================================================================
# Retry Decorator
# =============================================================================
def with_db_retry(
    max_retries: int = 2,
    error_message: str = "Catalog operation failed",
) -> Callable[[Callable[..., T]], Callable[..., T]]:
    """Decorator for catalog reads with automatic retry on connection errors.

    The decorated method receives a pooled connection as its first argument
    after ``self``. The connection goes back to the pool on every exit path;
    connections that failed at the connection level are discarded.

    Args:
        max_retries: Maximum attempts (default: 2).
        error_message: Base error message for failures.

    Returns:
        Decorated function with retry logic.

    Raises:
        TransientIOError: Connection-level failure on every attempt.
        CatalogError: Any other database error.

    Example:
        @with_db_retry(max_retries=3, error_message="Failed to fetch playlist")
        def _fetch_playlist(self, conn, playlist_id):
            ...
    """

    def decorator(func: Callable[..., T]) -> Callable[..., T]:
        @wraps(func)
        def wrapper(self: PlaylistReader, *args: Any, **kwargs: Any) -> T:
            last_error: Exception | None = None

            for attempt in range(max_retries):
                conn = self._get_connection()
                broken = False
                try:
                    return func(self, conn, *args, **kwargs)
                except (psycopg2.OperationalError, psycopg2.InterfaceError) as e:
                    _safe_rollback(conn)
                    broken = True
                    last_error = e
                    if attempt < max_retries - 1:
                        logger.warning(
                            f"Connection error in {func.__name__}, "
                            f"retrying ({attempt + 1}/{max_retries}): {e}"
                        )
                        continue
                    logger.error(f"{error_message} after {max_retries} attempts: {e}")
                except ExportServiceError:
                    _safe_rollback(conn)
                    raise
                except psycopg2.Error as e:
                    _safe_rollback(conn)
                    logger.error(f"{error_message}: {e}")
                    raise CatalogError(f"{error_message}: {e}") from e
                finally:
                    self._return_connection(conn, close=broken)

            raise TransientIOError(f"{error_message}: {last_error}") from last_error

        return wrapper

    return decorator


def _safe_rollback(conn: psycopg2.extensions.connection) -> None:
    """Roll back, ignoring failures of an already broken connection."""
    try:
        conn.rollback()
    except psycopg2.Error as e:
        logger.debug(f"Rollback failed on broken connection: {e}")


def _validate_connection(conn: psycopg2.extensions.connection) -> bool:
    """Validate if a database connection is alive.

    Leaves the connection idle, outside any transaction.

    Args:
        conn: PostgreSQL connection to validate

    Returns:
        True if connection is valid, False if dead/unusable
    """
    try:
        with conn.cursor() as cur:
            cur.execute("SELECT 1")
            cur.fetchone()
        conn.rollback()
        return True
    except (psycopg2.OperationalError, psycopg2.InterfaceError):
        return False


class PlaylistReader:
    """Reads playlist snapshots from the catalog database.

    Uses a thread-safe connection pool; the API calls it from several
    threads, the worker from one.
    """

    def __init__(self, config: ExportConfig) -> None:
        """Initialize the reader with a connection pool.

        Args:
            config: Export service configuration.

        Raises:
            CatalogError: If connection pool initialization fails.
        """
        self.config = config
        self._pool: pool.ThreadedConnectionPool | None = None

        try:
            self._init_pool()
            logger.info("Playlist reader initialized")
        except Exception as e:
            logger.error(f"Failed to initialize playlist reader: {e}")
            self._cleanup_pool()
            raise CatalogError(f"Connection pool initialization failed: {e}") from e

    def _init_pool(self) -> None:
        """Initialize PostgreSQL connection pool with configurable size."""
        min_conn = self.config.DB_POOL_SIZE_MIN
        max_conn = max(self.config.DB_POOL_SIZE_MAX, min_conn)

        logger.debug(
            f"Initializing catalog connection pool (min={min_conn}, max={max_conn})..."
        )
        self._pool = pool.ThreadedConnectionPool(
            minconn=min_conn,
            maxconn=max_conn,
            cursor_factory=RealDictCursor,
            **self.config.get_pool_kwargs(),
        )

    def _cleanup_pool(self) -> None:
        """Close the pool and release all connections."""
        if self._pool:
            try:
                self._pool.closeall()
                logger.debug("Connection pool closed successfully")
            except Exception as e:
                logger.warning(f"Error closing connection pool: {e}")
            finally:
                self._pool = None

    def _acquire(self) -> psycopg2.extensions.connection:
        """Take a connection, waiting up to DB_POOL_TIMEOUT_SECONDS for one.

        Raises:
            TransientIOError: If no connection frees up in time or the
                database is unreachable.
        """
        if not self._pool:
            raise TransientIOError("Connection pool not initialized")

        deadline = time.monotonic() + self.config.DB_POOL_TIMEOUT_SECONDS
        while True:
            try:
                return self._pool.getconn()
            except pool.PoolError as e:
                if self._pool.closed or time.monotonic() >= deadline:
                    raise TransientIOError(
                        f"No catalog connection available: {e}"
                    ) from e
                time.sleep(_POOL_WAIT_INTERVAL)
            except psycopg2.OperationalError as e:
                raise TransientIOError(
                    f"Cannot connect to catalog database: {e}", reconnect=True
                ) from e

    def _get_connection(self) -> psycopg2.extensions.connection:
        """Get connection from pool with automatic validation.

        Returns:
            Live database connection.

        Raises:
            TransientIOError: If the pool is unavailable or exhausted.
        """
        conn = self._acquire()

        if not _validate_connection(conn):
            self._return_connection(conn, close=True)
            logger.warning("Dead connection detected, retrieving fresh connection")
            conn = self._acquire()

        return conn

    def _return_connection(
        self, conn: psycopg2.extensions.connection, close: bool = False
    ) -> None:
        """Return connection to pool, discarding it when ``close`` is set."""
        if self._pool:
            self._pool.putconn(conn, close=close)

    def fetch(self, playlist_id: str) -> Playlist:
        """Load a playlist snapshot with its songs ordered by title.

        Each call reads the current catalog state; nothing is cached.

        Args:
            playlist_id: Playlist to load.

        Returns:
            Playlist snapshot.

        Raises:
            NotFoundError: If the playlist does not exist.
            TransientIOError: On connection-level failures or timeouts.
            CatalogError: On any other database failure.
        """
        logger.debug(f"Fetching playlist {playlist_id}")
        playlist = self._fetch_playlist(playlist_id)
        logger.info(f"Fetched playlist {playlist_id} ({len(playlist.songs)} songs)")
        return playlist

    @with_db_retry(max_retries=2, error_message="Failed to fetch playlist")
    def _fetch_playlist(
        self, conn: psycopg2.extensions.connection, playlist_id: str
    ) -> Playlist:
        with conn.cursor() as cur:
            # Both queries must observe the same snapshot.
            cur.execute("SET TRANSACTION ISOLATION LEVEL REPEATABLE READ READ ONLY")
            cur.execute(PLAYLIST_QUERY, (playlist_id,))
            header = cur.fetchone()

            if not header:
                raise NotFoundError("Playlist not found", entity_id=playlist_id)

            cur.execute(SONGS_QUERY, (playlist_id,))
            rows = cur.fetchall()

        conn.commit()

        try:
            return Playlist(
                id=header["id"],
                name=header["name"],
                songs=[Song.model_validate(dict(row)) for row in rows],
            )
        except PydanticValidationError as e:
            raise CatalogError(f"Playlist {playlist_id} has invalid song rows: {e}") from e

    def verify_playlist_owner(self, playlist_id: str, user_id: str) -> None:
        """Ensure a user owns a playlist.

        Args:
            playlist_id: Playlist to check.
            user_id: Authenticated user.

        Raises:
            NotFoundError: If the playlist does not exist.
            ForbiddenError: If the user is not the owner.
        """
        owner = self._get_owner(playlist_id)

        if owner is None:
            raise NotFoundError("Playlist not found", entity_id=playlist_id)
        if owner != user_id:
            logger.warning(f"User {user_id} denied access to playlist {playlist_id}")
            raise ForbiddenError("You are not allowed to access this playlist")

    @with_db_retry(max_retries=2, error_message="Failed to verify playlist owner")
    def _get_owner(
        self, conn: psycopg2.extensions.connection, playlist_id: str
    ) -> str | None:
        with conn.cursor() as cur:
            cur.execute(OWNER_QUERY, (playlist_id,))
            row = cur.fetchone()
        conn.commit()
        return row["owner"] if row else None

    def health_check(self) -> bool:
        """Check database connectivity.

        Returns:
            True if database is accessible, False otherwise.
        """
        try:
            conn = self._get_connection()
        except ExportServiceError as e:
            logger.warning(f"Health check failed: {e}")
            return False

        self._return_connection(conn)
        return True

    def close(self) -> None:
        """Close all connections in pool."""
        if self._pool:
            logger.info("Closing catalog connection pool...")
            self._cleanup_pool()
            logger.info("Catalog connection pool closed")
