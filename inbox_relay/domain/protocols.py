"""Protocol definitions for dependency inversion.

These interfaces describe the collaborators around an ingestion coordinator:
the platform REST client and live feed, and the downstream contact, message,
notification and marker services.
"""

from datetime import datetime
from typing import Protocol, runtime_checkable

from inbox_relay.domain.models import (
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


class PlatformClientProtocol(Protocol):
    """Paginated historical queries plus the follow-back call."""

    def list_followers(self, cursor: int) -> FollowerPage | None:
        """Fetch one page of followers, most recent follower first.

        Args:
            cursor: ``-1`` for the first page, otherwise ``FollowerPage.next_cursor``

        Raises:
            RateLimitError: When the platform rate limit is exhausted
            TransientFetchError: On recoverable transport failures
            FatalFetchError: On permanent failures
        """
        ...

    def list_direct_messages(self, paging: PagingSpec) -> list[DirectMessage] | None:
        """Fetch one page of received direct messages, newest first.

        Raises:
            RateLimitError: When the platform rate limit is exhausted
            TransientFetchError: On recoverable transport failures
            FatalFetchError: On permanent failures
        """
        ...

    def create_friendship(self, user_id: int) -> None:
        """Follow ``user_id`` from the channel account.

        Raises:
            AutoFollowError: If the platform rejects the follow request
        """
        ...


@runtime_checkable
class EventSinkProtocol(Protocol):
    """Receiver of live-feed events."""

    def on_direct_message(self, message: DirectMessage) -> None: ...

    def on_follow(self, follower: PlatformUser, followed: PlatformUser) -> None: ...


class LiveFeedProtocol(Protocol):
    """Long-lived push connection with at-least-once delivery."""

    def start(self, sink: EventSinkProtocol) -> None:
        """Open the connection and deliver events to ``sink``."""
        ...

    def stop(self) -> None:
        """Close the connection; no further events are delivered."""
        ...


class PlatformClientFactoryProtocol(Protocol):
    """Builds per-account platform clients from credentials."""

    def rest_client(self, credentials: PlatformCredentials) -> PlatformClientProtocol: ...

    def live_feed(self, credentials: PlatformCredentials) -> LiveFeedProtocol: ...


class ContactServiceProtocol(Protocol):
    """Downstream contact resolution."""

    def get_or_create_contact(
        self, org_id: int, urn: ContactUrn, channel_id: int, name: str | None
    ) -> ContactContext: ...


class MessageServiceProtocol(Protocol):
    """Downstream message ingestion."""

    def create_incoming(
        self,
        context: IncomingContext,
        from_urn: ContactUrn,
        body: str,
        created_at: datetime,
        external_id: str,
        name: str | None,
    ) -> int:
        """Save an incoming message and return its id."""
        ...

    def get_last_external_id(self, channel_id: int, direction: Direction) -> str | None:
        """Return the external id of the last message saved for the channel."""
        ...


class NotificationQueueProtocol(Protocol):
    """Downstream routing layer notification queue."""

    def queue_follow_notification(
        self, channel_id: int, contact_urn_id: int, is_new: bool
    ) -> None: ...


class ChannelMarkerServiceProtocol(Protocol):
    """Configuration-driven per-channel marker storage."""

    def get_channel_marker(self, channel_id: int) -> str | None: ...

    def update_channel_marker(self, channel_id: int, value: str) -> None: ...
