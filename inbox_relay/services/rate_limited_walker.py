"""Rate-limit aware fetch helper shared by the backfill walks.

A walk asks for one page at a time through ``RateLimitedWalker.fetch``. When
the platform reports rate-limit exhaustion the walker sleeps for the reset
window and re-invokes the same fetch. Every other failure, and an
interrupted sleep, ends the walk: ``fetch`` returns ``None`` and the caller
keeps whatever it accumulated so far.
"""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any, Final, TypeVar

from inbox_relay.config.logging_config import get_logger
from inbox_relay.config.settings import RATE_LIMIT_DEFAULT_RESET_SECONDS
from inbox_relay.domain.exceptions import (
    FatalFetchError,
    RateLimitError,
    TransientFetchError,
)
from inbox_relay.observability.metrics import (
    FETCH_FAILURES_TOTAL,
    RATE_LIMIT_WAITS_TOTAL,
)

T = TypeVar("T")

SleepCallable = Callable[[float], None]

ABORT_INTERRUPTED: Final[str] = "interrupted"
ABORT_TRANSIENT: Final[str] = "transient_error"
ABORT_FATAL: Final[str] = "fatal_error"
ABORT_UNEXPECTED: Final[str] = "unexpected_error"
ABORT_RATE_LIMIT_EXHAUSTED: Final[str] = "rate_limit_exhausted"

logger = get_logger(__name__)


class RateLimitedWalker:
    """Wraps single-page fetches with platform rate-limit backoff."""

    def __init__(
        self,
        *,
        default_reset_seconds: float = RATE_LIMIT_DEFAULT_RESET_SECONDS,
        max_rate_limit_retries: int | None = None,
        cancel_event: threading.Event | None = None,
        sleep: SleepCallable | None = None,
    ) -> None:
        """Initialize the walker.

        Args:
            default_reset_seconds: Backoff used when the platform gives no reset time
            max_rate_limit_retries: Cap on sleeps per walker (None = unlimited)
            cancel_event: Setting this event interrupts a backoff sleep
            sleep: Optional sleep override; may raise InterruptedError
        """
        self._default_reset_seconds = max(default_reset_seconds, 0.0)
        self._max_rate_limit_retries = max_rate_limit_retries
        self._cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._rate_limit_waits = 0
        self.last_abort_reason: str | None = None

    @property
    def rate_limit_waits(self) -> int:
        return self._rate_limit_waits

    def fetch(
        self,
        operation: Callable[[], T],
        *,
        action: str,
        context: dict[str, Any] | None = None,
    ) -> T | None:
        """Run ``operation``, retrying after each rate-limit signal.

        Args:
            operation: Zero-argument callable fetching one page
            action: Label for logs and metrics (e.g. ``list_followers``)
            context: Extra log context

        Returns:
            The operation result, or None if the walk must stop
        """
        log_context = context or {}
        self.last_abort_reason = None

        while True:
            if self._cancel_event.is_set():
                return self._abort(ABORT_INTERRUPTED, action, log_context)

            try:
                return operation()
            except RateLimitError as exc:
                if (
                    self._max_rate_limit_retries is not None
                    and self._rate_limit_waits >= self._max_rate_limit_retries
                ):
                    return self._abort(
                        ABORT_RATE_LIMIT_EXHAUSTED, action, log_context, exc
                    )

                wait_seconds = self._reset_seconds(exc)
                self._rate_limit_waits += 1
                RATE_LIMIT_WAITS_TOTAL.labels(action=action).inc()
                # error level so it reaches alerting
                logger.error(
                    "backfill_rate_limited",
                    action=action,
                    retry_after_seconds=wait_seconds,
                    attempt=self._rate_limit_waits,
                    **log_context,
                )
                if self._pause(wait_seconds):
                    return self._abort(ABORT_INTERRUPTED, action, log_context)
            except TransientFetchError as exc:
                return self._abort(ABORT_TRANSIENT, action, log_context, exc)
            except FatalFetchError as exc:
                return self._abort(ABORT_FATAL, action, log_context, exc)
            except Exception as exc:  # noqa: BLE001
                return self._abort(ABORT_UNEXPECTED, action, log_context, exc)

    def _reset_seconds(self, error: RateLimitError) -> float:
        if error.retry_after is None:
            return self._default_reset_seconds
        return max(float(error.retry_after), 0.0)

    def _pause(self, seconds: float) -> bool:
        """Sleep for ``seconds``; return True if the sleep was interrupted."""
        if self._sleep is not None:
            try:
                self._sleep(seconds)
            except InterruptedError:
                return True
            return self._cancel_event.is_set()
        return self._cancel_event.wait(seconds)

    def _abort(
        self,
        reason: str,
        action: str,
        context: dict[str, Any],
        error: BaseException | None = None,
    ) -> None:
        self.last_abort_reason = reason
        FETCH_FAILURES_TOTAL.labels(action=action, error_kind=reason).inc()
        logger.warning(
            "backfill_walk_aborted",
            action=action,
            reason=reason,
            error=str(error) if error is not None else None,
            error_type=type(error).__name__ if error is not None else None,
            **context,
        )
        return None


__all__ = [
    "ABORT_FATAL",
    "ABORT_INTERRUPTED",
    "ABORT_RATE_LIMIT_EXHAUSTED",
    "ABORT_TRANSIENT",
    "ABORT_UNEXPECTED",
    "RateLimitedWalker",
]
