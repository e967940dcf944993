"""High-water-mark bookkeeping for channel resumption.

The follower marker lives in the channel marker service as a decimal string.
The message marker is not stored here: it is the external id of the last
incoming message the downstream message service saved for the channel.
"""

from __future__ import annotations

from inbox_relay.config.logging_config import get_logger
from inbox_relay.domain.exceptions import PersistenceError
from inbox_relay.domain.models import Direction
from inbox_relay.domain.protocols import (
    ChannelMarkerServiceProtocol,
    MessageServiceProtocol,
)

logger = get_logger(__name__)


def parse_marker(raw: str | None) -> int | None:
    """Parse a stored marker, treating missing or malformed values as absent.

    Example:
        >>> parse_marker("42")
        42
        >>> parse_marker("") is None
        True
    """
    if raw is None:
        return None
    try:
        return int(raw.strip())
    except ValueError:
        return None


class HighWaterMarkStore:
    """Reads and writes the resumption markers for a channel."""

    def __init__(
        self,
        marker_service: ChannelMarkerServiceProtocol,
        message_service: MessageServiceProtocol,
    ) -> None:
        self._marker_service = marker_service
        self._message_service = message_service

    def get_follower_marker(self, channel_id: int) -> int | None:
        try:
            raw = self._marker_service.get_channel_marker(channel_id)
        except Exception as exc:
            raise PersistenceError(
                f"Unable to read follower marker for channel #{channel_id}: {exc}"
            ) from exc

        marker = parse_marker(raw)
        if raw is not None and marker is None:
            logger.warning(
                "follower_marker_unparseable", channel_id=channel_id, raw_marker=raw
            )
        return marker

    def get_message_marker(self, channel_id: int) -> int | None:
        """Last delivered incoming message id, queried from the message service."""
        raw = self._message_service.get_last_external_id(channel_id, Direction.INCOMING)
        return parse_marker(raw)

    def set_follower_marker(self, channel_id: int, follower_id: int) -> None:
        """Persist the follower marker.

        Raises:
            PersistenceError: If the marker service rejects the write
        """
        try:
            self._marker_service.update_channel_marker(channel_id, str(follower_id))
        except Exception as exc:
            raise PersistenceError(
                f"Unable to persist follower marker for channel #{channel_id}: {exc}"
            ) from exc


__all__ = ["HighWaterMarkStore", "parse_marker"]
