"""Ingestion coordinator for a single platform account.

Startup is two-phase. A backfill task first recovers follows and direct
messages missed while the channel was offline, then the live feed is opened.
Opening the feed only after backfill keeps delivery in chronological order.
Both phases deliver events through ``handle_new_follower`` and
``handle_message_received`` so downstream behaviour is identical regardless
of where an event was observed.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any

from pydantic import SecretStr
from pydantic import ValidationError as PydanticValidationError

from inbox_relay.config.logging_config import get_logger
from inbox_relay.config.settings import (
    BACKFILL_MAX_AGE_MINUTES_DEFAULT,
    MESSAGE_PAGE_SIZE_DEFAULT,
    RATE_LIMIT_DEFAULT_RESET_SECONDS,
    Settings,
)
from inbox_relay.domain.exceptions import (
    AutoFollowError,
    ConfigurationError,
    PersistenceError,
)
from inbox_relay.domain.models import (
    BackfillResult,
    ChannelConfig,
    ChannelContext,
    ContactUrn,
    CoordinatorState,
    DirectMessage,
    EventSource,
    FollowEvent,
    HighWaterMark,
    IncomingContext,
    MessageEvent,
    PlatformCredentials,
    PlatformUser,
    WalkResult,
)
from inbox_relay.domain.protocols import (
    ChannelMarkerServiceProtocol,
    ContactServiceProtocol,
    MessageServiceProtocol,
    NotificationQueueProtocol,
    PlatformClientFactoryProtocol,
)
from inbox_relay.observability.metrics import (
    AUTO_FOLLOW_FAILURES_TOTAL,
    BACKFILL_DURATION_SECONDS,
    EVENTS_DISPATCHED_TOTAL,
    LIVE_EVENTS_DROPPED_TOTAL,
)
from inbox_relay.ports.backfill_queue import BackfillSchedulerProtocol
from inbox_relay.services.high_water_mark import HighWaterMarkStore
from inbox_relay.services.rate_limited_walker import RateLimitedWalker, SleepCallable
from inbox_relay.use_cases.backfill_followers import FollowerBackfillWalker
from inbox_relay.use_cases.backfill_messages import Clock, MessageBackfillWalker

logger = get_logger(__name__)

_ABORT_DISPATCH_FAILED = "dispatch_failed"


@dataclass(frozen=True)
class DownstreamServices:
    """Downstream collaborators shared by every coordinator in a process."""

    contacts: ContactServiceProtocol
    messages: MessageServiceProtocol
    notifications: NotificationQueueProtocol
    markers: ChannelMarkerServiceProtocol


@dataclass(frozen=True)
class BackfillOptions:
    """Tuning for the backfill walks."""

    max_age: timedelta = timedelta(minutes=BACKFILL_MAX_AGE_MINUTES_DEFAULT)
    message_page_size: int = MESSAGE_PAGE_SIZE_DEFAULT
    rate_limit_default_reset_seconds: float = RATE_LIMIT_DEFAULT_RESET_SECONDS
    max_rate_limit_retries: int | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> BackfillOptions:
        return cls(
            max_age=timedelta(minutes=settings.backfill_max_age_minutes),
            message_page_size=settings.message_page_size,
            rate_limit_default_reset_seconds=settings.rate_limit_default_reset_seconds,
            max_rate_limit_retries=settings.max_rate_limit_retries,
        )


def parse_channel_config(channel: ChannelContext) -> ChannelConfig:
    """Parse and validate the channel configuration.

    Raises:
        ConfigurationError: If config is missing, malformed or lacks credentials
    """
    if channel.config is None:
        raise ConfigurationError(f"Channel #{channel.channel_id} has no configuration")

    try:
        config = ChannelConfig.model_validate(channel.config)
    except PydanticValidationError as exc:
        raise ConfigurationError(
            f"Channel #{channel.channel_id} has invalid configuration: {exc}"
        ) from exc

    if not config.has_credentials:
        raise ConfigurationError(
            f"Channel #{channel.channel_id} has no platform auth configuration"
        )
    return config


class BackfillTask:
    """Backfill work for one channel, submitted to the shared backfill queue."""

    def __init__(self, coordinator: IngestionCoordinator) -> None:
        self._coordinator = coordinator
        self.result: BackfillResult | None = None

    @property
    def name(self) -> str:
        return f"backfill_channel_{self._coordinator.channel.channel_id}"

    def run(self) -> None:
        self.result = self._coordinator.run_backfill()


class IngestionCoordinator:
    """Owns startup ordering and event dispatch for one channel.

    Implements ``EventSinkProtocol`` for the live feed.
    """

    def __init__(
        self,
        channel: ChannelContext,
        *,
        client_factory: PlatformClientFactoryProtocol,
        services: DownstreamServices,
        api_key: SecretStr,
        api_secret: SecretStr,
        production: bool = False,
        scheduler: BackfillSchedulerProtocol | None = None,
        options: BackfillOptions | None = None,
        sleep: SleepCallable | None = None,
        clock: Clock | None = None,
    ) -> None:
        """Initialize the coordinator.

        Args:
            channel: Channel binding (id, org, raw config)
            client_factory: Builds the REST client and live feed
            services: Downstream contact/message/notification/marker services
            api_key: Platform application key
            api_secret: Platform application secret
            production: Use production platform endpoints
            scheduler: Shared backfill queue; backfill runs inline when omitted
            options: Backfill tuning
            sleep: Sleep override for rate-limit backoff (tests)
            clock: Clock override for the message age window (tests)

        Raises:
            ConfigurationError: If the channel config is missing or lacks credentials
        """
        config = parse_channel_config(channel)
        assert config.oauth_token is not None
        assert config.oauth_token_secret is not None

        self._channel = channel
        self._handle_id = config.handle_id
        self._auto_follow = config.auto_follow
        self._services = services
        self._scheduler = scheduler
        self._options = options or BackfillOptions()
        self._sleep = sleep
        self._clock = clock
        self._store = HighWaterMarkStore(services.markers, services.messages)

        credentials = PlatformCredentials(
            api_key=api_key,
            api_secret=api_secret,
            token=config.oauth_token,
            token_secret=config.oauth_token_secret,
            production=production,
        )
        self._rest_client = client_factory.rest_client(credentials)
        self._live_feed = client_factory.live_feed(credentials)

        self._lock = threading.RLock()
        self._cancel_event = threading.Event()
        self._state = CoordinatorState.NOT_STARTED
        self._feed_opened = False
        self._backfill_complete = False
        self._high_water_mark = HighWaterMark()
        self._follower_marker_readable = True
        self._last_backfill: BackfillResult | None = None
        self._log = logger.bind(channel_id=channel.channel_id)

    # Properties -------------------------------------------------------

    @property
    def channel(self) -> ChannelContext:
        return self._channel

    @property
    def state(self) -> CoordinatorState:
        return self._state

    @property
    def handle_id(self) -> int:
        return self._handle_id

    @property
    def auto_follow(self) -> bool:
        return self._auto_follow

    @property
    def is_backfill_complete(self) -> bool:
        return self._backfill_complete

    @property
    def high_water_mark(self) -> HighWaterMark:
        return self._high_water_mark

    @property
    def last_backfill(self) -> BackfillResult | None:
        return self._last_backfill

    # Lifecycle --------------------------------------------------------

    def update_from_config(self, config: dict[str, Any]) -> None:
        """Apply hot-reloadable settings from a new channel config.

        Raises:
            ConfigurationError: If the new config is malformed
        """
        try:
            parsed = ChannelConfig.model_validate(config)
        except PydanticValidationError as exc:
            raise ConfigurationError(
                f"Channel #{self._channel.channel_id} has invalid configuration: {exc}"
            ) from exc
        if parsed.auto_follow != self._auto_follow:
            self._log.info("auto_follow_updated", auto_follow=parsed.auto_follow)
        self._auto_follow = parsed.auto_follow

    def start(self) -> BackfillTask | None:
        """Read the high-water-mark and schedule the backfill task.

        Returns:
            The submitted task, or None if the coordinator was already started
        """
        with self._lock:
            if self._state is not CoordinatorState.NOT_STARTED:
                self._log.warning("coordinator_start_ignored", state=self._state.value)
                return None

            try:
                last_follower_id = self._store.get_follower_marker(
                    self._channel.channel_id
                )
            except PersistenceError as exc:
                self._log.error("follower_marker_read_failed", error=str(exc))
                self._follower_marker_readable = False
                last_follower_id = None

            self._high_water_mark = HighWaterMark(last_follower_id=last_follower_id)
            self._state = CoordinatorState.BACKFILLING

        task = BackfillTask(self)
        if self._scheduler is None:
            task.run()
        else:
            self._scheduler.submit(task)
        return task

    def stop(self) -> None:
        """Close the live feed and reject further events. Safe in any state."""
        with self._lock:
            if self._state is CoordinatorState.STOPPED:
                return
            previous = self._state
            self._state = CoordinatorState.STOPPED
            self._cancel_event.set()
            feed_opened = self._feed_opened

        if feed_opened:
            try:
                self._live_feed.stop()
            except Exception:  # noqa: BLE001
                self._log.exception("live_feed_stop_failed")
        self._log.info("coordinator_stopped", previous_state=previous.value)

    def on_backfill_complete(self) -> None:
        """Open the live feed once both backfill walks have finished.

        The feed is started outside the lock so ``stop()`` never waits on a
        blocking connect. A failed start stops the coordinator.
        """
        with self._lock:
            self._backfill_complete = True
            if self._state is CoordinatorState.STOPPED:
                self._log.info("backfill_complete_after_stop")
                return
            self._feed_opened = True

        self._log.info("backfill_complete")
        try:
            self._live_feed.start(self)
        except Exception as exc:  # noqa: BLE001
            self._log.exception(
                "live_feed_start_failed", error_type=type(exc).__name__
            )
            self.stop()
            return

        with self._lock:
            if self._state is CoordinatorState.STOPPED:
                self._log.info("live_feed_opened_after_stop")
                return
            self._state = CoordinatorState.STREAMING

    # Backfill ---------------------------------------------------------

    def run_backfill(self) -> BackfillResult:
        """Follower walk (or bootstrap), then message walk, then open the feed."""
        channel_id = self._channel.channel_id
        result = BackfillResult(channel_id=channel_id)
        start_time = time.perf_counter()
        self._log.info(
            "backfill_started",
            last_follower_id=self._high_water_mark.last_follower_id,
        )

        try:
            if self._is_active():
                self._backfill_followers(result)
            if self._is_active():
                self._backfill_messages(result)
        finally:
            BACKFILL_DURATION_SECONDS.labels(task="channel_backfill").observe(
                time.perf_counter() - start_time
            )
            self._last_backfill = result
            self.on_backfill_complete()

        return result

    def _backfill_followers(self, result: BackfillResult) -> None:
        if not self._follower_marker_readable:
            self._log.warning("follower_backfill_skipped", reason="marker_unreadable")
            return

        walk = FollowerBackfillWalker(
            self._rest_client, self._new_walker(), channel_id=self._channel.channel_id
        )
        marker = self._high_water_mark.last_follower_id

        if marker is None:
            # new channel: seed the marker without notifying existing followers
            newest_id = walk.bootstrap()
            if newest_id is None:
                self._log.warning("follower_bootstrap_failed")
                return
            self._advance_follower_marker(newest_id)
            result.bootstrapped = True
            self._log.info("follower_marker_bootstrapped", follower_id=newest_id)
            return

        try:
            result.follower_walk = walk.run(
                marker, self.handle_new_follower, self._is_active
            )
        except Exception:  # noqa: BLE001
            self._log.exception("follower_backfill_dispatch_failed")
            result.follower_walk = WalkResult(
                completed=False, abort_reason=_ABORT_DISPATCH_FAILED
            )

    def _backfill_messages(self, result: BackfillResult) -> None:
        channel_id = self._channel.channel_id
        try:
            since_id = self._store.get_message_marker(channel_id)
        except Exception as exc:  # noqa: BLE001
            self._log.warning("message_marker_read_failed", error=str(exc))
            since_id = None
        self._high_water_mark = self._high_water_mark.model_copy(
            update={"last_message_external_id": since_id}
        )

        walk = MessageBackfillWalker(
            self._rest_client,
            self._new_walker(),
            channel_id=channel_id,
            max_age=self._options.max_age,
            page_size=self._options.message_page_size,
            clock=self._clock,
        )
        try:
            result.message_walk = walk.run(
                since_id, self.handle_message_received, self._is_active
            )
        except Exception:  # noqa: BLE001
            self._log.exception("message_backfill_dispatch_failed")
            result.message_walk = WalkResult(
                completed=False, abort_reason=_ABORT_DISPATCH_FAILED
            )

    def _new_walker(self) -> RateLimitedWalker:
        return RateLimitedWalker(
            default_reset_seconds=self._options.rate_limit_default_reset_seconds,
            max_rate_limit_retries=self._options.max_rate_limit_retries,
            cancel_event=self._cancel_event,
            sleep=self._sleep,
        )

    def _is_active(self) -> bool:
        return self._state is not CoordinatorState.STOPPED

    # Handlers ---------------------------------------------------------

    def handle_message_received(self, event: MessageEvent) -> int | None:
        """Forward an inbound direct message downstream.

        Returns:
            Saved message id, or None if the message was sent by this account
        """
        if event.sender_account_id == self._handle_id:
            return None

        context = IncomingContext(
            channel_id=self._channel.channel_id, org_id=self._channel.org_id
        )
        from_urn = ContactUrn(path=event.sender_handle)
        saved_id = self._services.messages.create_incoming(
            context,
            from_urn,
            event.body,
            event.created_at,
            str(event.external_message_id),
            event.sender_handle,
        )

        EVENTS_DISPATCHED_TOTAL.labels(
            kind="message", source=event.observed_via.value
        ).inc()
        self._log.info(
            "direct_message_saved",
            external_id=event.external_message_id,
            source=event.observed_via.value,
            saved_id=saved_id,
        )
        return saved_id

    def handle_new_follower(self, event: FollowEvent) -> None:
        """Record a new follower, optionally follow back, notify, advance marker."""
        channel_id = self._channel.channel_id
        urn = ContactUrn(path=event.follower_handle)
        contact = self._services.contacts.get_or_create_contact(
            self._channel.org_id, urn, channel_id, event.follower_handle
        )

        if contact.is_new:
            self._log.info(
                "follower_contact_created",
                follower=event.follower_handle,
                source=event.observed_via.value,
                contact_id=contact.contact_id,
            )

        if self._auto_follow:
            self._follow_back(event)

        self._services.notifications.queue_follow_notification(
            channel_id, contact.contact_urn_id, contact.is_new
        )

        self._advance_follower_marker(event.follower_account_id)
        EVENTS_DISPATCHED_TOTAL.labels(
            kind="follow", source=event.observed_via.value
        ).inc()

    def _follow_back(self, event: FollowEvent) -> None:
        try:
            self._rest_client.create_friendship(event.follower_account_id)
        except AutoFollowError as exc:
            AUTO_FOLLOW_FAILURES_TOTAL.labels(error_kind="rejected").inc()
            self._log.warning(
                "auto_follow_rejected",
                follower=event.follower_handle,
                error=str(exc),
            )
            return
        except Exception as exc:  # noqa: BLE001
            AUTO_FOLLOW_FAILURES_TOTAL.labels(error_kind="unexpected").inc()
            self._log.error(
                "auto_follow_failed",
                follower=event.follower_handle,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            return
        self._log.debug("auto_followed", follower=event.follower_handle)

    def _advance_follower_marker(self, follower_id: int) -> None:
        self._high_water_mark = self._high_water_mark.with_follower(follower_id)
        try:
            self._store.set_follower_marker(self._channel.channel_id, follower_id)
        except PersistenceError as exc:
            self._log.error(
                "follower_marker_persist_failed",
                follower_id=follower_id,
                error=str(exc),
            )

    # Live feed sink ---------------------------------------------------

    def on_direct_message(self, message: DirectMessage) -> None:
        try:
            if not self._is_active():
                LIVE_EVENTS_DROPPED_TOTAL.labels(kind="message", reason="stopped").inc()
                return
            if message.sender_id == self._handle_id:
                LIVE_EVENTS_DROPPED_TOTAL.labels(
                    kind="message", reason="self_sent"
                ).inc()
                return

            self.handle_message_received(
                MessageEvent.from_message(message, EventSource.STREAM)
            )
        except Exception:  # noqa: BLE001
            self._log.exception("live_message_handling_failed", external_id=message.id)

    def on_follow(self, follower: PlatformUser, followed: PlatformUser) -> None:
        try:
            if not self._is_active():
                LIVE_EVENTS_DROPPED_TOTAL.labels(kind="follow", reason="stopped").inc()
                return
            if followed.id != self._handle_id:
                LIVE_EVENTS_DROPPED_TOTAL.labels(
                    kind="follow", reason="not_followed_account"
                ).inc()
                return

            self.handle_new_follower(FollowEvent.from_user(follower, EventSource.STREAM))
        except Exception:  # noqa: BLE001
            self._log.exception("live_follow_handling_failed", follower_id=follower.id)


__all__ = [
    "BackfillOptions",
    "BackfillTask",
    "DownstreamServices",
    "IngestionCoordinator",
    "parse_channel_config",
]
