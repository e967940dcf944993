"""Per-channel marker persistence adapter."""

from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final, Protocol

from inbox_relay.config.settings import Settings


class CursorProtocol(Protocol):
    """Protocol for database cursors used by the marker repository."""

    def execute(self, query: str, params: tuple[Any, ...] = ()) -> Any:
        """Execute a SQL statement with positional parameters."""

    def fetchone(self) -> Any:
        """Fetch a single result row."""

    def close(self) -> None:
        """Release cursor resources."""


class ConnectionProtocol(Protocol):
    """Protocol for connections compatible with the marker repository."""

    def cursor(self) -> CursorProtocol:
        """Create a database cursor."""

    def commit(self) -> None:
        """Commit the active transaction."""


GetConnectionCallable = Callable[[], AbstractContextManager[ConnectionProtocol]]


class ChannelMarkerRepository:
    """Stores one opaque marker string per channel.

    Implements ``ChannelMarkerServiceProtocol``; the ingestion coordinator
    keeps its follower high-water-mark here.
    """

    _TABLE_NAME: Final[str] = "channel_markers"

    def __init__(self, get_conn: GetConnectionCallable) -> None:
        """Initialize the repository.

        Args:
            get_conn: Callable returning a context manager that yields a database connection.
        """
        self._get_conn = get_conn

    def ensure_schema(self) -> None:
        """Create the marker table if it does not exist."""
        with self._connection_scope() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(
                    f"CREATE TABLE IF NOT EXISTS {self._TABLE_NAME} ("
                    "channel_id BIGINT PRIMARY KEY, "
                    "marker TEXT, "
                    "updated_at TEXT)"
                )
                conn.commit()
            finally:
                cursor.close()

    def get_channel_marker(self, channel_id: int) -> str | None:
        """Load the marker for a channel, or None if never written."""
        with self._connection_scope() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(self._build_select_sql(conn), (channel_id,))
                row = cursor.fetchone()
            finally:
                cursor.close()

        if not row:
            return None
        return str(row[0]) if row[0] is not None else None

    def update_channel_marker(self, channel_id: int, value: str) -> None:
        """Persist the marker for a channel."""
        timestamp = datetime.now(UTC).isoformat()

        with self._connection_scope() as conn:
            cursor = conn.cursor()
            try:
                cursor.execute(
                    self._build_upsert_sql(conn),
                    (channel_id, value, timestamp),
                )
                conn.commit()
            finally:
                cursor.close()

    @contextmanager
    def _connection_scope(self) -> Iterator[ConnectionProtocol]:
        with self._get_conn() as conn:
            yield conn

    @staticmethod
    def _is_sqlite(conn: ConnectionProtocol) -> bool:
        return isinstance(conn, sqlite3.Connection)

    def _build_select_sql(self, conn: ConnectionProtocol) -> str:
        placeholder = "?" if self._is_sqlite(conn) else "%s"
        return (
            f"SELECT marker FROM {self._TABLE_NAME} WHERE channel_id = " + placeholder
        )

    def _build_upsert_sql(self, conn: ConnectionProtocol) -> str:
        if self._is_sqlite(conn):
            return (
                f"INSERT INTO {self._TABLE_NAME} (channel_id, marker, updated_at) "
                "VALUES (?, ?, ?) "
                "ON CONFLICT(channel_id) DO UPDATE SET "
                "marker=excluded.marker, "
                "updated_at=excluded.updated_at"
            )
        return (
            f"INSERT INTO {self._TABLE_NAME} (channel_id, marker, updated_at) "
            "VALUES (%s, %s, %s) "
            "ON CONFLICT (channel_id) DO UPDATE SET "
            "marker=EXCLUDED.marker, "
            "updated_at=EXCLUDED.updated_at"
        )


def sqlite_connection_factory(db_path: str) -> GetConnectionCallable:
    """Connection factory opening a fresh SQLite connection per scope."""

    @contextmanager
    def _conn() -> Iterator[sqlite3.Connection]:
        connection = sqlite3.connect(db_path)
        try:
            yield connection
        finally:
            connection.close()

    return _conn


def postgres_connection_factory(settings: Settings) -> GetConnectionCallable:
    """Connection factory for PostgreSQL built from settings."""
    import psycopg2

    password = settings.postgres_password
    if password is None:
        raise RuntimeError("POSTGRES_PASSWORD must be configured for PostgreSQL")

    @contextmanager
    def _conn() -> Iterator[Any]:
        connection = psycopg2.connect(
            host=settings.postgres_host,
            port=settings.postgres_port,
            database=settings.postgres_database,
            user=settings.postgres_user,
            password=password.get_secret_value(),
            connect_timeout=settings.postgres_connect_timeout_seconds,
        )
        try:
            yield connection
        finally:
            connection.close()

    return _conn


def create_channel_marker_repository(settings: Settings) -> ChannelMarkerRepository:
    """Build a marker repository for the configured database backend."""
    if settings.database_type == "sqlite":
        Path(settings.db_path).parent.mkdir(parents=True, exist_ok=True)
        get_conn = sqlite_connection_factory(settings.db_path)
    elif settings.database_type == "postgres":
        get_conn = postgres_connection_factory(settings)
    else:
        raise RuntimeError(f"Unsupported database type: {settings.database_type}")

    repository = ChannelMarkerRepository(get_conn)
    repository.ensure_schema()
    return repository


__all__ = [
    "ChannelMarkerRepository",
    "create_channel_marker_repository",
    "postgres_connection_factory",
    "sqlite_connection_factory",
]
