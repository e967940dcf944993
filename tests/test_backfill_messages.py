"""Direct-message backfill walk: age window, since-id and max-id paging."""

from __future__ import annotations

from datetime import timedelta

import pytest

from inbox_relay.domain.exceptions import RateLimitError, TransientFetchError
from inbox_relay.domain.models import DirectMessage, MessageEvent, PagingSpec
from inbox_relay.services.rate_limited_walker import ABORT_TRANSIENT, RateLimitedWalker
from inbox_relay.use_cases.backfill_messages import MessageBackfillWalker
from tests.conftest import NOW, FakePlatformClient, RecordingSleep, make_message


def _walk(
    client: FakePlatformClient,
    *,
    page_size: int = 3,
    max_age_minutes: int = 60,
    sleep: RecordingSleep | None = None,
) -> MessageBackfillWalker:
    return MessageBackfillWalker(
        client,
        RateLimitedWalker(sleep=sleep or RecordingSleep()),
        channel_id=7,
        max_age=timedelta(minutes=max_age_minutes),
        page_size=page_size,
        clock=lambda: NOW,
    )


def _ids(events: list[MessageEvent]) -> list[int]:
    return [event.external_message_id for event in events]


def test_stops_at_first_message_outside_age_window() -> None:
    client = FakePlatformClient(
        messages=[
            make_message(4, minutes_ago=10),
            make_message(3, minutes_ago=30),
            make_message(2, minutes_ago=90),
            make_message(1, minutes_ago=120),
        ]
    )
    dispatched: list[MessageEvent] = []

    result = _walk(client, page_size=4).run(None, dispatched.append)

    assert _ids(dispatched) == [3, 4]
    assert len(client.message_calls) == 1
    assert result.completed is True


def test_lowers_max_id_below_each_page() -> None:
    client = FakePlatformClient(
        messages=[make_message(i, minutes_ago=1) for i in range(6, 11)]
    )
    dispatched: list[MessageEvent] = []

    result = _walk(client, page_size=2).run(None, dispatched.append)

    assert [paging.max_id for paging in client.message_calls] == [None, 8, 6]
    assert _ids(dispatched) == [6, 7, 8, 9, 10]
    assert result.pages_fetched == 3


def test_since_id_bounds_every_request() -> None:
    client = FakePlatformClient(
        messages=[make_message(i, minutes_ago=5) for i in range(1, 6)]
    )
    dispatched: list[MessageEvent] = []

    _walk(client, page_size=3).run(3, dispatched.append)

    assert _ids(dispatched) == [4, 5]
    assert all(paging.since_id == 3 for paging in client.message_calls)
    assert all(paging.count == 3 for paging in client.message_calls)


def test_empty_listing_ends_walk() -> None:
    client = FakePlatformClient()
    dispatched: list[MessageEvent] = []

    result = _walk(client).run(None, dispatched.append)

    assert dispatched == []
    assert result.pages_fetched == 1
    assert result.completed is True


def test_rate_limit_is_retried_with_same_paging() -> None:
    client = FakePlatformClient(messages=[make_message(1, minutes_ago=1)])
    client.message_errors.append(RateLimitError(retry_after=4))
    sleep = RecordingSleep()
    dispatched: list[MessageEvent] = []

    _walk(client, sleep=sleep).run(None, dispatched.append)

    assert sleep.calls == [4.0]
    assert client.message_calls[0] == client.message_calls[1]
    assert _ids(dispatched) == [1]


class SecondPageFailsClient(FakePlatformClient):
    def list_direct_messages(self, paging: PagingSpec) -> list[DirectMessage] | None:
        if paging.max_id is not None:
            self.message_calls.append(paging)
            raise TransientFetchError("service unavailable")
        return super().list_direct_messages(paging)


def test_failure_mid_walk_dispatches_collected_messages() -> None:
    client = SecondPageFailsClient(
        messages=[make_message(i, minutes_ago=1) for i in range(1, 6)]
    )
    dispatched: list[MessageEvent] = []

    result = _walk(client, page_size=2).run(None, dispatched.append)

    assert _ids(dispatched) == [4, 5]
    assert result.completed is False
    assert result.abort_reason == ABORT_TRANSIENT


def test_should_continue_false_stops_dispatch() -> None:
    client = FakePlatformClient(
        messages=[make_message(i, minutes_ago=1) for i in range(1, 4)]
    )
    dispatched: list[MessageEvent] = []

    result = _walk(client, page_size=5).run(
        None, dispatched.append, lambda: not dispatched
    )

    assert _ids(dispatched) == [1]
    assert result.dispatched == 1


def test_page_size_must_be_positive() -> None:
    with pytest.raises(ValueError):
        _walk(FakePlatformClient(), page_size=0)
