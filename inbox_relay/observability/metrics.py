"""Prometheus metrics for backfill and live ingestion."""

from __future__ import annotations

import os
import threading
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from inbox_relay.config.logging_config import get_logger

logger = get_logger(__name__)

BACKFILL_TASKS_SUBMITTED_TOTAL: Final[Counter] = Counter(
    "inbox_relay_backfill_tasks_submitted_total",
    "Total number of backfill tasks submitted",
    labelnames=("task",),
)

BACKFILL_DURATION_SECONDS: Final[Histogram] = Histogram(
    "inbox_relay_backfill_duration_seconds",
    "Duration of backfill tasks in seconds",
    labelnames=("task",),
)

RATE_LIMIT_WAITS_TOTAL: Final[Counter] = Counter(
    "inbox_relay_rate_limit_waits_total",
    "Number of rate-limit backoff sleeps performed during backfill",
    labelnames=("action",),
)

FETCH_FAILURES_TOTAL: Final[Counter] = Counter(
    "inbox_relay_fetch_failures_total",
    "Historical fetches that terminated a backfill walk",
    labelnames=("action", "error_kind"),
)

AUTO_FOLLOW_FAILURES_TOTAL: Final[Counter] = Counter(
    "inbox_relay_auto_follow_failures_total",
    "Follow-back requests that failed",
    labelnames=("error_kind",),
)

EVENTS_DISPATCHED_TOTAL: Final[Counter] = Counter(
    "inbox_relay_events_dispatched_total",
    "Events handed to downstream services",
    labelnames=("kind", "source"),
)

LIVE_EVENTS_DROPPED_TOTAL: Final[Counter] = Counter(
    "inbox_relay_live_events_dropped_total",
    "Live-feed events dropped before reaching a handler",
    labelnames=("kind", "reason"),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False
_DEFAULT_METRICS_PORT: Final[int] = 9000
_METRICS_PORT_ENV: Final[str] = "METRICS_PORT"


def _resolve_metrics_port(port: int | None) -> int:
    if port is not None:
        return port
    port_raw = os.getenv(_METRICS_PORT_ENV)
    try:
        return int(port_raw) if port_raw else _DEFAULT_METRICS_PORT
    except ValueError:
        logger.warning("invalid_metrics_port", port=port_raw)
        return _DEFAULT_METRICS_PORT


def ensure_metrics_exporter(port: int | None = None) -> None:
    """Start Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        resolved_port = _resolve_metrics_port(port)

        try:
            start_http_server(resolved_port)
        except OSError as exc:
            logger.error(
                "metrics_exporter_start_failed",
                port=resolved_port,
                error=str(exc),
            )
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=resolved_port)


__all__ = [
    "AUTO_FOLLOW_FAILURES_TOTAL",
    "BACKFILL_DURATION_SECONDS",
    "BACKFILL_TASKS_SUBMITTED_TOTAL",
    "EVENTS_DISPATCHED_TOTAL",
    "FETCH_FAILURES_TOTAL",
    "LIVE_EVENTS_DROPPED_TOTAL",
    "RATE_LIMIT_WAITS_TOTAL",
    "ensure_metrics_exporter",
]
