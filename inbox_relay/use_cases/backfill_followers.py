"""Backfill missed follows.

The platform lists followers most-recent-first. That ordering is an
observed behaviour of the listing endpoint rather than a documented
guarantee; the stop condition in ``collect`` is the only code relying on it.
"""

from __future__ import annotations

from collections.abc import Callable

from inbox_relay.config.logging_config import get_logger
from inbox_relay.domain.models import (
    FIRST_PAGE_CURSOR,
    EventSource,
    FollowEvent,
    PlatformUser,
    WalkResult,
)
from inbox_relay.domain.protocols import PlatformClientProtocol
from inbox_relay.services.rate_limited_walker import RateLimitedWalker

logger = get_logger(__name__)

FollowDispatcher = Callable[[FollowEvent], None]


def _always_continue() -> bool:
    return True


class FollowerBackfillWalker:
    """Walks the follower list from newest back to a known follower."""

    def __init__(
        self,
        client: PlatformClientProtocol,
        walker: RateLimitedWalker,
        *,
        channel_id: int,
    ) -> None:
        self._client = client
        self._walker = walker
        self._channel_id = channel_id

    def bootstrap(self) -> int | None:
        """Return the id of the most recent follower, or 0 if there is none.

        Used for channels that have never been backfilled: the returned id
        seeds the marker so pre-existing followers never trigger
        notifications. Returns None when the fetch was aborted, in which case
        no marker should be written.
        """
        page = self._walker.fetch(
            lambda: self._client.list_followers(FIRST_PAGE_CURSOR),
            action="list_followers",
            context={"channel_id": self._channel_id, "cursor": FIRST_PAGE_CURSOR},
        )
        if page is None:
            return None if self._walker.last_abort_reason is not None else 0
        if not page.users:
            return 0
        return page.users[0].id

    def collect(self, since_marker: int) -> tuple[list[PlatformUser], int, bool]:
        """Collect followers newer than ``since_marker``, newest first.

        Returns:
            Tuple of (followers, pages fetched, walk completed without abort)
        """
        cursor = FIRST_PAGE_CURSOR
        new_followers: list[PlatformUser] = []
        pages = 0

        while True:
            current_cursor = cursor
            page = self._walker.fetch(
                lambda: self._client.list_followers(current_cursor),
                action="list_followers",
                context={"channel_id": self._channel_id, "cursor": current_cursor},
            )
            if page is None:
                return new_followers, pages, self._walker.last_abort_reason is None

            pages += 1
            for follower in page.users:
                if follower.id == since_marker:
                    return new_followers, pages, True
                new_followers.append(follower)

            if not page.has_next:
                return new_followers, pages, True
            cursor = page.next_cursor

    def run(
        self,
        since_marker: int,
        dispatch: FollowDispatcher,
        should_continue: Callable[[], bool] = _always_continue,
    ) -> WalkResult:
        """Collect missed followers and dispatch them oldest first.

        ``dispatch`` is responsible for advancing the follower marker after
        each event.
        """
        followers, pages, completed = self.collect(since_marker)

        dispatched = 0
        for follower in reversed(followers):
            if not should_continue():
                logger.info(
                    "follower_backfill_dispatch_stopped",
                    channel_id=self._channel_id,
                    dispatched=dispatched,
                    remaining=len(followers) - dispatched,
                )
                break
            dispatch(FollowEvent.from_user(follower, EventSource.BACKFILL))
            dispatched += 1

        logger.info(
            "follower_backfill_complete",
            channel_id=self._channel_id,
            since_marker=since_marker,
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


__all__ = ["FollowerBackfillWalker"]
