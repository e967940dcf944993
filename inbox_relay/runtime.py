"""Process runtime helpers: logging, metrics, wiring and the run loop."""

from __future__ import annotations

import signal
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from types import FrameType
from typing import Protocol

from inbox_relay.adapters.channel_marker_repository import (
    create_channel_marker_repository,
)
from inbox_relay.config.logging_config import get_logger, setup_logging
from inbox_relay.config.settings import Settings
from inbox_relay.domain.models import ChannelContext
from inbox_relay.domain.protocols import (
    ChannelMarkerServiceProtocol,
    ContactServiceProtocol,
    MessageServiceProtocol,
    NotificationQueueProtocol,
    PlatformClientFactoryProtocol,
)
from inbox_relay.observability.metrics import ensure_metrics_exporter
from inbox_relay.ports.backfill_queue import BackfillSchedulerProtocol
from inbox_relay.use_cases.ingestion_coordinator import DownstreamServices
from inbox_relay.use_cases.relay_manager import RelayManager

logger = get_logger(__name__)


class ShutdownSignal(Protocol):
    def is_set(self) -> bool: ...

    def wait(self, timeout: float) -> bool: ...


@dataclass
class _ShutdownController:
    """Shutdown flag shared by signal handlers and the run loop."""

    _event: threading.Event

    def is_set(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def request(self, signum: int, frame: FrameType | None) -> None:
        logger.info("shutdown_signal_received", signal=signal.Signals(signum).name)
        self._event.set()


def create_shutdown_controller() -> _ShutdownController:
    return _ShutdownController(threading.Event())


def install_signal_handlers(controller: _ShutdownController) -> None:
    """Register SIGTERM/SIGINT handlers for graceful shutdown."""

    def _handler(signum: int, frame: FrameType | None) -> None:
        controller.request(signum, frame)

    signal.signal(signal.SIGTERM, _handler)
    signal.signal(signal.SIGINT, _handler)


def initialize_logging(settings: Settings) -> None:
    setup_logging(log_level=settings.log_level, json_logs=settings.json_logs)
    logger.info(
        "logging_initialized", level=settings.log_level, json_logs=settings.json_logs
    )


def create_relay_manager(
    settings: Settings,
    *,
    client_factory: PlatformClientFactoryProtocol,
    contacts: ContactServiceProtocol,
    messages: MessageServiceProtocol,
    notifications: NotificationQueueProtocol,
    markers: ChannelMarkerServiceProtocol | None = None,
    scheduler: BackfillSchedulerProtocol | None = None,
    start_metrics: bool = True,
) -> RelayManager:
    """Wire a relay manager from settings and downstream services.

    The SQL marker repository from settings is used when ``markers`` is not
    given. The Prometheus exporter is started when ``metrics_port`` is set.
    """
    if start_metrics and settings.metrics_port is not None:
        ensure_metrics_exporter(settings.metrics_port)

    services = DownstreamServices(
        contacts=contacts,
        messages=messages,
        notifications=notifications,
        markers=markers or create_channel_marker_repository(settings),
    )
    return RelayManager(
        settings,
        client_factory=client_factory,
        services=services,
        scheduler=scheduler,
    )


def run_relay(
    manager: RelayManager,
    channels: Iterable[ChannelContext],
    controller: ShutdownSignal,
    *,
    poll_interval: float = 1.0,
) -> None:
    """Start every channel, block until shutdown, then stop them all."""
    started = 0
    for channel in channels:
        if manager.add_channel(channel) is not None:
            started += 1
    logger.info("relay_started", channels=started)

    try:
        while not controller.is_set():
            controller.wait(max(0.1, poll_interval))
    finally:
        manager.stop_all()
        logger.info("relay_stopped")


__all__ = [
    "ShutdownSignal",
    "create_relay_manager",
    "create_shutdown_controller",
    "initialize_logging",
    "install_signal_handlers",
    "run_relay",
]
