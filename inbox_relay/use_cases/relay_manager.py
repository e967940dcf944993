"""Relay manager: one ingestion coordinator per connected channel."""

from __future__ import annotations

import threading
from typing import Any

from inbox_relay.adapters.backfill_queue_inprocess import SerialBackfillQueue
from inbox_relay.config.logging_config import get_logger
from inbox_relay.config.settings import Settings
from inbox_relay.domain.exceptions import ConfigurationError
from inbox_relay.domain.models import ChannelContext
from inbox_relay.domain.protocols import PlatformClientFactoryProtocol
from inbox_relay.ports.backfill_queue import BackfillSchedulerProtocol
from inbox_relay.services.rate_limited_walker import SleepCallable
from inbox_relay.use_cases.ingestion_coordinator import (
    BackfillOptions,
    DownstreamServices,
    IngestionCoordinator,
)

logger = get_logger(__name__)


def _credential_fingerprint(config: dict[str, Any] | None) -> tuple[Any, ...]:
    if config is None:
        return ()
    return (
        config.get("handle_id"),
        config.get("oauth_token"),
        config.get("oauth_token_secret"),
    )


class RelayManager:
    """Starts, reconfigures and stops coordinators for a set of channels.

    Every coordinator shares one backfill scheduler so backfills across
    channels run one at a time.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        client_factory: PlatformClientFactoryProtocol,
        services: DownstreamServices,
        scheduler: BackfillSchedulerProtocol | None = None,
        sleep: SleepCallable | None = None,
    ) -> None:
        self._settings = settings
        self._client_factory = client_factory
        self._services = services
        self._owns_scheduler = scheduler is None
        self._scheduler = scheduler or SerialBackfillQueue()
        self._options = BackfillOptions.from_settings(settings)
        self._sleep = sleep
        self._coordinators: dict[int, IngestionCoordinator] = {}
        self._lock = threading.Lock()

    @property
    def scheduler(self) -> BackfillSchedulerProtocol:
        return self._scheduler

    def get(self, channel_id: int) -> IngestionCoordinator | None:
        with self._lock:
            return self._coordinators.get(channel_id)

    def channel_ids(self) -> list[int]:
        with self._lock:
            return sorted(self._coordinators)

    def add_channel(self, channel: ChannelContext) -> IngestionCoordinator | None:
        """Create and start a coordinator for ``channel``.

        Returns:
            The running coordinator, or None if the channel is misconfigured
        """
        with self._lock:
            existing = self._coordinators.get(channel.channel_id)
        if existing is not None:
            logger.warning("channel_already_running", channel_id=channel.channel_id)
            return existing

        try:
            coordinator = self._build(channel)
        except ConfigurationError as exc:
            logger.error(
                "channel_configuration_invalid",
                channel_id=channel.channel_id,
                error=str(exc),
            )
            return None

        with self._lock:
            self._coordinators[channel.channel_id] = coordinator
        coordinator.start()
        logger.info("channel_added", channel_id=channel.channel_id)
        return coordinator

    def update_channel(self, channel: ChannelContext) -> IngestionCoordinator | None:
        """Apply a changed channel config.

        Only ``auto_follow`` is applied in place; a change of account or
        credentials restarts the channel.
        """
        with self._lock:
            existing = self._coordinators.get(channel.channel_id)
        if existing is None:
            return self.add_channel(channel)

        if _credential_fingerprint(existing.channel.config) != _credential_fingerprint(
            channel.config
        ):
            logger.info("channel_restart_required", channel_id=channel.channel_id)
            self.remove_channel(channel.channel_id)
            return self.add_channel(channel)

        try:
            existing.update_from_config(channel.config or {})
        except ConfigurationError as exc:
            logger.error(
                "channel_configuration_invalid",
                channel_id=channel.channel_id,
                error=str(exc),
            )
        return existing

    def remove_channel(self, channel_id: int) -> None:
        with self._lock:
            coordinator = self._coordinators.pop(channel_id, None)
        if coordinator is None:
            return
        coordinator.stop()
        logger.info("channel_removed", channel_id=channel_id)

    def stop_all(self) -> None:
        """Stop every coordinator and, if owned, the backfill queue."""
        with self._lock:
            coordinators = list(self._coordinators.values())
            self._coordinators.clear()

        for coordinator in coordinators:
            coordinator.stop()

        if self._owns_scheduler and isinstance(self._scheduler, SerialBackfillQueue):
            self._scheduler.shutdown(wait=True)
        logger.info("relay_manager_stopped", channels=len(coordinators))

    def _build(self, channel: ChannelContext) -> IngestionCoordinator:
        return IngestionCoordinator(
            channel,
            client_factory=self._client_factory,
            services=self._services,
            api_key=self._settings.platform_api_key,
            api_secret=self._settings.platform_api_secret,
            production=self._settings.production,
            scheduler=self._scheduler,
            options=self._options,
            sleep=self._sleep,
        )


__all__ = ["RelayManager"]
