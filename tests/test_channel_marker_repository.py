from __future__ import annotations

import sqlite3
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from pathlib import Path

import pytest

from inbox_relay.adapters.channel_marker_repository import (
    ChannelMarkerRepository,
    create_channel_marker_repository,
)
from inbox_relay.config.settings import Settings


@pytest.fixture
def conn_factory() -> Iterator[Callable[[], AbstractContextManager[sqlite3.Connection]]]:
    conn = sqlite3.connect(":memory:")

    @contextmanager
    def _ctx() -> Iterator[sqlite3.Connection]:
        yield conn

    try:
        yield _ctx
    finally:
        conn.close()


def test_marker_absent_until_written(conn_factory) -> None:  # type: ignore[no-untyped-def]
    repo = ChannelMarkerRepository(conn_factory)
    repo.ensure_schema()

    assert repo.get_channel_marker(7) is None


def test_update_overwrites_previous_marker(conn_factory) -> None:  # type: ignore[no-untyped-def]
    repo = ChannelMarkerRepository(conn_factory)
    repo.ensure_schema()

    repo.update_channel_marker(7, "100")
    repo.update_channel_marker(7, "250")
    repo.update_channel_marker(8, "1")

    assert repo.get_channel_marker(7) == "250"
    assert repo.get_channel_marker(8) == "1"


def test_ensure_schema_is_idempotent(conn_factory) -> None:  # type: ignore[no-untyped-def]
    repo = ChannelMarkerRepository(conn_factory)
    repo.ensure_schema()
    repo.update_channel_marker(7, "5")
    repo.ensure_schema()

    assert repo.get_channel_marker(7) == "5"


def test_create_repository_for_sqlite_file(tmp_path: Path) -> None:
    settings = Settings(
        platform_api_key="key",  # type: ignore[arg-type]
        platform_api_secret="secret",  # type: ignore[arg-type]
        database_type="sqlite",
        db_path=str(tmp_path / "nested" / "markers.db"),
    )

    repo = create_channel_marker_repository(settings)
    repo.update_channel_marker(3, "42")

    reopened = create_channel_marker_repository(settings)
    assert reopened.get_channel_marker(3) == "42"
