"""Pytest configuration and shared fakes for the platform and downstream services."""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytz

from inbox_relay.domain.models import (
    FIRST_PAGE_CURSOR,
    NO_MORE_PAGES_CURSOR,
    ChannelContext,
    ContactContext,
    ContactUrn,
    DirectMessage,
    Direction,
    FollowerPage,
    IncomingContext,
    PagingSpec,
    PlatformCredentials,
    PlatformUser,
)
from inbox_relay.domain.protocols import EventSinkProtocol
from inbox_relay.use_cases.ingestion_coordinator import (
    BackfillOptions,
    DownstreamServices,
    IngestionCoordinator,
)

NOW = datetime(2025, 1, 2, 12, 0, 0, tzinfo=pytz.UTC)
HANDLE_ID = 1000
CHANNEL_ID = 7
ORG_ID = 3
_CURSOR_BASE = 100


def make_user(user_id: int) -> PlatformUser:
    return PlatformUser(id=user_id, screen_name=f"user{user_id}")


def make_message(
    message_id: int, minutes_ago: float, sender_id: int | None = None
) -> DirectMessage:
    sender = sender_id if sender_id is not None else 500 + message_id
    return DirectMessage(
        id=message_id,
        sender_id=sender,
        sender_screen_name=f"sender{sender}",
        text=f"message-{message_id}",
        created_at=NOW - timedelta(minutes=minutes_ago),
    )


class FakePlatformClient:
    """Serves followers in fixed-size pages and messages by id window."""

    def __init__(
        self,
        followers: list[PlatformUser] | None = None,
        *,
        follower_page_size: int = 3,
        messages: list[DirectMessage] | None = None,
        event_log: list[str] | None = None,
    ) -> None:
        users = followers or []
        self._follower_pages = [
            users[index : index + follower_page_size]
            for index in range(0, len(users), follower_page_size)
        ] or [[]]
        self._messages = sorted(messages or [], key=lambda msg: msg.id, reverse=True)
        self.follower_errors: list[Exception] = []
        self.message_errors: list[Exception] = []
        self.errors_after_calls: dict[int, Exception] = {}
        self.follower_calls: list[int] = []
        self.message_calls: list[PagingSpec] = []
        self.friendship_calls: list[int] = []
        self.friendship_error: Exception | None = None
        self._event_log = event_log if event_log is not None else []

    def list_followers(self, cursor: int) -> FollowerPage | None:
        self.follower_calls.append(cursor)
        self._event_log.append(f"list_followers:{cursor}")
        call_number = len(self.follower_calls)
        if call_number in self.errors_after_calls:
            raise self.errors_after_calls.pop(call_number)
        if self.follower_errors:
            raise self.follower_errors.pop(0)

        index = 0 if cursor == FIRST_PAGE_CURSOR else cursor - _CURSOR_BASE
        has_next = index + 1 < len(self._follower_pages)
        return FollowerPage(
            users=self._follower_pages[index],
            next_cursor=_CURSOR_BASE + index + 1 if has_next else NO_MORE_PAGES_CURSOR,
        )

    def list_direct_messages(self, paging: PagingSpec) -> list[DirectMessage] | None:
        self.message_calls.append(paging)
        self._event_log.append("list_direct_messages")
        if self.message_errors:
            raise self.message_errors.pop(0)

        window = [
            msg
            for msg in self._messages
            if (paging.since_id is None or msg.id > paging.since_id)
            and (paging.max_id is None or msg.id <= paging.max_id)
        ]
        return window[: paging.count]

    def create_friendship(self, user_id: int) -> None:
        self.friendship_calls.append(user_id)
        if self.friendship_error is not None:
            raise self.friendship_error


class FakeLiveFeed:
    def __init__(self, event_log: list[str] | None = None) -> None:
        self.sink: EventSinkProtocol | None = None
        self.start_calls = 0
        self.stop_calls = 0
        self.backfill_complete_at_start: bool | None = None
        self.start_error: Exception | None = None
        self._event_log = event_log if event_log is not None else []

    def start(self, sink: EventSinkProtocol) -> None:
        self.sink = sink
        self.start_calls += 1
        self.backfill_complete_at_start = getattr(sink, "is_backfill_complete", None)
        self._event_log.append("feed_start")
        if self.start_error is not None:
            raise self.start_error

    def stop(self) -> None:
        self.stop_calls += 1
        self._event_log.append("feed_stop")


class FakeClientFactory:
    def __init__(
        self,
        client: FakePlatformClient,
        feed_factory: Callable[[], FakeLiveFeed],
    ) -> None:
        self.client = client
        self._feed_factory = feed_factory
        self.feeds: list[FakeLiveFeed] = []
        self.credentials: list[PlatformCredentials] = []

    def rest_client(self, credentials: PlatformCredentials) -> FakePlatformClient:
        self.credentials.append(credentials)
        return self.client

    def live_feed(self, credentials: PlatformCredentials) -> FakeLiveFeed:
        feed = self._feed_factory()
        self.feeds.append(feed)
        return feed


class FakeContactService:
    def __init__(self, known_handles: set[str] | None = None) -> None:
        self._contacts: dict[str, ContactContext] = {}
        self.calls: list[tuple[int, ContactUrn, int, str | None]] = []
        for handle in known_handles or set():
            self._register(handle, is_new=False)

    def _register(self, handle: str, *, is_new: bool) -> ContactContext:
        next_id = len(self._contacts) + 1
        contact = ContactContext(
            contact_id=next_id, contact_urn_id=1000 + next_id, is_new=is_new
        )
        self._contacts[handle] = contact.model_copy(update={"is_new": False})
        return contact

    def get_or_create_contact(
        self, org_id: int, urn: ContactUrn, channel_id: int, name: str | None
    ) -> ContactContext:
        self.calls.append((org_id, urn, channel_id, name))
        existing = self._contacts.get(urn.path)
        if existing is not None:
            return existing
        return self._register(urn.path, is_new=True)


class FakeMessageService:
    def __init__(
        self,
        last_external_id: str | None = None,
        event_log: list[str] | None = None,
    ) -> None:
        self.last_external_id = last_external_id
        self.saved: list[dict[str, Any]] = []
        self.error: Exception | None = None
        self._event_log = event_log if event_log is not None else []

    def create_incoming(
        self,
        context: IncomingContext,
        from_urn: ContactUrn,
        body: str,
        created_at: datetime,
        external_id: str,
        name: str | None,
    ) -> int:
        if self.error is not None:
            raise self.error
        self.saved.append(
            {
                "context": context,
                "from_urn": str(from_urn),
                "body": body,
                "created_at": created_at,
                "external_id": external_id,
                "name": name,
            }
        )
        self._event_log.append(f"message:{external_id}")
        self.last_external_id = external_id
        return len(self.saved)

    def get_last_external_id(self, channel_id: int, direction: Direction) -> str | None:
        assert direction is Direction.INCOMING
        return self.last_external_id


class FakeNotificationQueue:
    def __init__(self, event_log: list[str] | None = None) -> None:
        self.notifications: list[tuple[int, int, bool]] = []
        self._event_log = event_log if event_log is not None else []

    def queue_follow_notification(
        self, channel_id: int, contact_urn_id: int, is_new: bool
    ) -> None:
        self.notifications.append((channel_id, contact_urn_id, is_new))
        self._event_log.append(f"notify:{contact_urn_id}")


class InMemoryMarkerService:
    def __init__(self, markers: dict[int, str] | None = None) -> None:
        self.markers: dict[int, str] = dict(markers or {})
        self.writes: list[tuple[int, str]] = []
        self.fail_reads = False
        self.fail_writes = False

    def get_channel_marker(self, channel_id: int) -> str | None:
        if self.fail_reads:
            raise ConnectionError("marker store unavailable")
        return self.markers.get(channel_id)

    def update_channel_marker(self, channel_id: int, value: str) -> None:
        if self.fail_writes:
            raise ConnectionError("marker store unavailable")
        self.markers[channel_id] = value
        self.writes.append((channel_id, value))


class RecordingSleep:
    def __init__(self) -> None:
        self.calls: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class ManualScheduler:
    """Scheduler that holds tasks until the test runs them."""

    def __init__(self) -> None:
        self.tasks: list[Any] = []

    def submit(self, task: Any) -> str:
        self.tasks.append(task)
        return f"task-{len(self.tasks)}"


def channel_config(**overrides: Any) -> dict[str, Any]:
    config: dict[str, Any] = {
        "handle_id": HANDLE_ID,
        "oauth_token": "token",
        "oauth_token_secret": "token-secret",
        "auto_follow": True,
    }
    config.update(overrides)
    return config


@pytest.fixture
def event_log() -> list[str]:
    return []


@pytest.fixture
def platform_client(event_log: list[str]) -> FakePlatformClient:
    return FakePlatformClient(event_log=event_log)


@pytest.fixture
def marker_service() -> InMemoryMarkerService:
    return InMemoryMarkerService()


@pytest.fixture
def message_service(event_log: list[str]) -> FakeMessageService:
    return FakeMessageService(event_log=event_log)


@pytest.fixture
def contact_service() -> FakeContactService:
    return FakeContactService()


@pytest.fixture
def notification_queue(event_log: list[str]) -> FakeNotificationQueue:
    return FakeNotificationQueue(event_log=event_log)


@pytest.fixture
def services(
    contact_service: FakeContactService,
    message_service: FakeMessageService,
    notification_queue: FakeNotificationQueue,
    marker_service: InMemoryMarkerService,
) -> DownstreamServices:
    return DownstreamServices(
        contacts=contact_service,
        messages=message_service,
        notifications=notification_queue,
        markers=marker_service,
    )


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def channel() -> ChannelContext:
    return ChannelContext(channel_id=CHANNEL_ID, org_id=ORG_ID, config=channel_config())


@pytest.fixture
def build_coordinator(
    event_log: list[str],
    services: DownstreamServices,
    recording_sleep: RecordingSleep,
) -> Callable[..., tuple[IngestionCoordinator, FakeClientFactory]]:
    """Factory building a coordinator around a given fake platform client."""

    def _build(
        client: FakePlatformClient,
        channel: ChannelContext | None = None,
        *,
        scheduler: Any | None = None,
        options: BackfillOptions | None = None,
    ) -> tuple[IngestionCoordinator, FakeClientFactory]:
        factory = FakeClientFactory(client, lambda: FakeLiveFeed(event_log))
        coordinator = IngestionCoordinator(
            channel
            or ChannelContext(
                channel_id=CHANNEL_ID, org_id=ORG_ID, config=channel_config()
            ),
            client_factory=factory,
            services=services,
            api_key="app-key",  # type: ignore[arg-type]
            api_secret="app-secret",  # type: ignore[arg-type]
            scheduler=scheduler,
            options=options or BackfillOptions(message_page_size=3),
            sleep=recording_sleep,
            clock=lambda: NOW,
        )
        return coordinator, factory

    return _build
