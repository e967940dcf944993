"""Domain models for the inbox relay.

All models use Pydantic v2 for validation and serialization.
"""

from __future__ import annotations

from datetime import datetime
from enum import StrEnum
from typing import Any, Final

import pytz
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator

FIRST_PAGE_CURSOR: Final[int] = -1
NO_MORE_PAGES_CURSOR: Final[int] = 0
URN_SCHEME_TWITTER: Final[str] = "twitter"


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive input is assumed UTC)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=pytz.UTC)
    return value.astimezone(pytz.UTC)


class ChannelType(StrEnum):
    """Channel type codes understood by the downstream message service."""

    TWITTER = "TT"


class Direction(StrEnum):
    """Message direction as stored downstream."""

    INCOMING = "I"
    OUTGOING = "O"


class EventSource(StrEnum):
    """Where an event was observed."""

    STREAM = "stream"
    BACKFILL = "backfill"


class CoordinatorState(StrEnum):
    """Lifecycle of an ingestion coordinator."""

    NOT_STARTED = "not_started"
    BACKFILLING = "backfilling"
    STREAMING = "streaming"
    STOPPED = "stopped"


class ChannelContext(BaseModel):
    """Account-level binding owned by the channel-management subsystem."""

    channel_id: int
    org_id: int
    config: dict[str, Any] | None = Field(
        default=None, description="Raw channel configuration JSON"
    )


class ChannelConfig(BaseModel):
    """Parsed channel configuration.

    Recognized keys: ``handle_id``, ``oauth_token``, ``oauth_token_secret``,
    ``auto_follow``. Unknown keys are ignored.
    """

    model_config = ConfigDict(extra="ignore")

    handle_id: int = Field(default=0, description="Platform account id")
    oauth_token: SecretStr | None = None
    oauth_token_secret: SecretStr | None = None
    auto_follow: bool = Field(default=True, description="Follow back new followers")

    @field_validator("handle_id", mode="before")
    @classmethod
    def _default_handle_id(cls, value: Any) -> Any:
        return 0 if value is None else value

    @field_validator("auto_follow", mode="before")
    @classmethod
    def _default_auto_follow(cls, value: Any) -> Any:
        return True if value is None else value

    @property
    def has_credentials(self) -> bool:
        return self.oauth_token is not None and self.oauth_token_secret is not None


class PlatformCredentials(BaseModel):
    """Credentials needed to open REST and live connections for one account."""

    api_key: SecretStr
    api_secret: SecretStr
    token: SecretStr
    token_secret: SecretStr
    production: bool = False


class PlatformUser(BaseModel):
    """Platform account as returned by follower listings and the live feed."""

    id: int
    screen_name: str


class DirectMessage(BaseModel):
    """Direct message as returned by the platform."""

    id: int
    sender_id: int
    sender_screen_name: str
    text: str
    created_at: datetime

    @field_validator("created_at")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        return ensure_utc(value)


class FollowerPage(BaseModel):
    """One page of a cursor-paginated follower listing, newest follower first."""

    users: list[PlatformUser] = Field(default_factory=list)
    next_cursor: int = NO_MORE_PAGES_CURSOR

    @property
    def has_next(self) -> bool:
        return self.next_cursor != NO_MORE_PAGES_CURSOR


class PagingSpec(BaseModel):
    """Paging request for the direct-message listing."""

    count: int = Field(..., gt=0)
    page: int = 1
    since_id: int | None = None
    max_id: int | None = None


class HighWaterMark(BaseModel):
    """Resumption markers for one channel.

    ``last_follower_id`` of ``None`` means the channel was never initialised;
    ``0`` means initialised with no follower seen yet.
    """

    model_config = ConfigDict(frozen=True)

    last_follower_id: int | None = None
    last_message_external_id: int | None = None

    def with_follower(self, follower_id: int) -> HighWaterMark:
        return self.model_copy(update={"last_follower_id": follower_id})


class FollowEvent(BaseModel):
    """A new follower of the channel account."""

    model_config = ConfigDict(frozen=True)

    follower_account_id: int
    follower_handle: str
    observed_via: EventSource

    @classmethod
    def from_user(cls, user: PlatformUser, source: EventSource) -> FollowEvent:
        return cls(
            follower_account_id=user.id,
            follower_handle=user.screen_name,
            observed_via=source,
        )


class MessageEvent(BaseModel):
    """An inbound direct message to the channel account."""

    model_config = ConfigDict(frozen=True)

    external_message_id: int
    sender_account_id: int
    sender_handle: str
    body: str
    created_at: datetime
    observed_via: EventSource

    @classmethod
    def from_message(cls, message: DirectMessage, source: EventSource) -> MessageEvent:
        return cls(
            external_message_id=message.id,
            sender_account_id=message.sender_id,
            sender_handle=message.sender_screen_name,
            body=message.text,
            created_at=message.created_at,
            observed_via=source,
        )


class ContactUrn(BaseModel):
    """Contact address in ``scheme:path`` form."""

    model_config = ConfigDict(frozen=True)

    scheme: str = URN_SCHEME_TWITTER
    path: str

    def __str__(self) -> str:
        return f"{self.scheme}:{self.path}"


class ContactContext(BaseModel):
    """Result of resolving a platform handle to a downstream contact."""

    contact_id: int
    contact_urn_id: int
    is_new: bool = False


class IncomingContext(BaseModel):
    """Routing context passed to the message-ingestion service."""

    channel_id: int
    channel_type: ChannelType = ChannelType.TWITTER
    org_id: int


class WalkResult(BaseModel):
    """Outcome of one backfill walk."""

    dispatched: int = 0
    pages_fetched: int = 0
    completed: bool = True
    abort_reason: str | None = None


class BackfillResult(BaseModel):
    """Outcome of a full backfill run for one channel."""

    channel_id: int
    bootstrapped: bool = False
    follower_walk: WalkResult | None = None
    message_walk: WalkResult | None = None
