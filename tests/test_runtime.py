from __future__ import annotations

import signal
from pathlib import Path

import pytest

from inbox_relay.config.settings import Settings
from inbox_relay.domain.models import ChannelContext
from inbox_relay.runtime import (
    create_relay_manager,
    create_shutdown_controller,
    initialize_logging,
    run_relay,
)
from tests.conftest import (
    ORG_ID,
    FakeClientFactory,
    FakeContactService,
    FakeLiveFeed,
    FakeMessageService,
    FakeNotificationQueue,
    FakePlatformClient,
    channel_config,
)


@pytest.fixture
def settings(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Settings:
    monkeypatch.chdir(tmp_path)
    return Settings(
        platform_api_key="app-key",  # type: ignore[arg-type]
        platform_api_secret="app-secret",  # type: ignore[arg-type]
        db_path=str(tmp_path / "markers.db"),
    )


def test_initialize_logging_accepts_settings(settings: Settings) -> None:
    initialize_logging(settings)


def test_relay_manager_persists_markers_in_sqlite(settings: Settings) -> None:
    factory = FakeClientFactory(FakePlatformClient(), FakeLiveFeed)
    manager = create_relay_manager(
        settings,
        client_factory=factory,
        contacts=FakeContactService(),
        messages=FakeMessageService(),
        notifications=FakeNotificationQueue(),
    )

    coordinator = manager.add_channel(
        ChannelContext(channel_id=5, org_id=ORG_ID, config=channel_config())
    )
    manager.scheduler.join()  # type: ignore[attr-defined]
    manager.stop_all()

    assert coordinator is not None
    assert coordinator.high_water_mark.last_follower_id == 0
    assert Path(settings.db_path).exists()


def test_run_relay_stops_channels_on_shutdown(settings: Settings) -> None:
    factory = FakeClientFactory(FakePlatformClient(), FakeLiveFeed)
    manager = create_relay_manager(
        settings,
        client_factory=factory,
        contacts=FakeContactService(),
        messages=FakeMessageService(),
        notifications=FakeNotificationQueue(),
    )
    controller = create_shutdown_controller()
    channels = [
        ChannelContext(channel_id=1, org_id=ORG_ID, config=channel_config()),
        ChannelContext(channel_id=2, org_id=ORG_ID, config=None),
    ]

    controller.request(signal.SIGTERM, None)

    run_relay(manager, channels, controller, poll_interval=0.1)

    feed = factory.feeds[0]
    assert feed.start_calls == feed.stop_calls
    assert manager.channel_ids() == []
    assert manager.get(2) is None
