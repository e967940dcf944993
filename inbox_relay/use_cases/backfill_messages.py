"""Backfill missed direct messages.

Pages are requested newest-first with a ``since_id`` lower bound (the last
message the downstream service saved) and a ``max_id`` upper bound that is
lowered below the smallest id of each page, so messages arriving during the
walk cannot shift page boundaries. Messages older than the max-age window
are never backfilled.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta

import pytz

from inbox_relay.config.logging_config import get_logger
from inbox_relay.domain.models import (
    DirectMessage,
    EventSource,
    MessageEvent,
    PagingSpec,
    WalkResult,
)
from inbox_relay.domain.protocols import PlatformClientProtocol
from inbox_relay.services.rate_limited_walker import RateLimitedWalker

logger = get_logger(__name__)

MessageDispatcher = Callable[[MessageEvent], object]
Clock = Callable[[], datetime]


def _utcnow() -> datetime:
    return datetime.now(tz=pytz.UTC)


def _always_continue() -> bool:
    return True


class MessageBackfillWalker:
    """Walks received direct messages back to a since-id or age boundary."""

    def __init__(
        self,
        client: PlatformClientProtocol,
        walker: RateLimitedWalker,
        *,
        channel_id: int,
        max_age: timedelta,
        page_size: int,
        clock: Clock | None = None,
    ) -> None:
        if page_size <= 0:
            raise ValueError("page_size must be positive")
        self._client = client
        self._walker = walker
        self._channel_id = channel_id
        self._max_age = max_age
        self._page_size = page_size
        self._clock = clock or _utcnow

    def collect(
        self, since_external_id: int | None
    ) -> tuple[list[DirectMessage], int, bool]:
        """Collect messages inside the backfill window, newest first.

        Returns:
            Tuple of (messages, pages fetched, walk completed without abort)
        """
        now = self._clock()
        paging = PagingSpec(count=self._page_size, since_id=since_external_id)
        collected: list[DirectMessage] = []
        pages = 0

        while True:
            current_paging = paging
            messages = self._walker.fetch(
                lambda: self._client.list_direct_messages(current_paging),
                action="list_direct_messages",
                context={
                    "channel_id": self._channel_id,
                    "since_id": current_paging.since_id,
                    "max_id": current_paging.max_id,
                },
            )
            if messages is None:
                return collected, pages, self._walker.last_abort_reason is None

            pages += 1
            min_page_id: int | None = None
            for message in messages:
                # pages are newest first, so everything after this is older still
                if now - message.created_at > self._max_age:
                    return collected, pages, True

                collected.append(message)
                if min_page_id is None or message.id < min_page_id:
                    min_page_id = message.id

            if len(messages) < paging.count or min_page_id is None:
                return collected, pages, True

            paging = paging.model_copy(update={"max_id": min_page_id - 1})

    def run(
        self,
        since_external_id: int | None,
        dispatch: MessageDispatcher,
        should_continue: Callable[[], bool] = _always_continue,
    ) -> WalkResult:
        """Collect missed messages and dispatch them oldest first."""
        messages, pages, completed = self.collect(since_external_id)

        dispatched = 0
        for message in reversed(messages):
            if not should_continue():
                logger.info(
                    "message_backfill_dispatch_stopped",
                    channel_id=self._channel_id,
                    dispatched=dispatched,
                    remaining=len(messages) - dispatched,
                )
                break
            dispatch(MessageEvent.from_message(message, EventSource.BACKFILL))
            dispatched += 1

        logger.info(
            "message_backfill_complete",
            channel_id=self._channel_id,
            since_id=since_external_id,
            pages=pages,
            dispatched=dispatched,
            completed=completed,
        )
        return WalkResult(
            dispatched=dispatched,
            pages_fetched=pages,
            completed=completed,
            abort_reason=None if completed else self._walker.last_abort_reason,
        )


__all__ = ["MessageBackfillWalker"]
