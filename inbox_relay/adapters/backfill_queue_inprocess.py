"""In-process backfill queue running tasks one at a time.

All channels of a process share one queue so their backfills never overlap
and the platform-wide rate-limit budget is spent predictably.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Final
from uuid import uuid4

from inbox_relay.config.logging_config import bind_context, get_logger, unbind_context
from inbox_relay.observability.metrics import (
    BACKFILL_DURATION_SECONDS,
    BACKFILL_TASKS_SUBMITTED_TOTAL,
)
from inbox_relay.ports.backfill_queue import (
    BackfillSchedulerProtocol,
    BackfillTaskProtocol,
)

logger = get_logger(__name__)

_STATUS_QUEUED: Final[str] = "queued"
_STATUS_RUNNING: Final[str] = "running"
_STATUS_SUCCEEDED: Final[str] = "succeeded"
_STATUS_FAILED: Final[str] = "failed"

_SHUTDOWN: Final[object] = object()


@dataclass
class TaskRecord:
    """Internal representation of a submitted task."""

    name: str
    status: str = field(default=_STATUS_QUEUED)
    submitted_at: float = field(default_factory=time.time)
    started_at: float | None = field(default=None)
    finished_at: float | None = field(default=None)
    error: str | None = field(default=None)


class SerialBackfillQueue(BackfillSchedulerProtocol):
    """FIFO queue executing backfill tasks on a single worker thread."""

    def __init__(self, *, name: str = "BackfillWorker") -> None:
        self._queue: queue.Queue[tuple[str, BackfillTaskProtocol] | object] = (
            queue.Queue()
        )
        self._records: dict[str, TaskRecord] = {}
        self._lock = threading.RLock()
        self._closed = False
        self._worker = threading.Thread(target=self._run_worker, name=name, daemon=True)
        self._worker.start()

    def submit(self, task: BackfillTaskProtocol) -> str:
        with self._lock:
            if self._closed:
                raise RuntimeError("Backfill queue has been shut down")
            task_id = str(uuid4())
            self._records[task_id] = TaskRecord(name=task.name)

        logger.info("backfill_task_submitted", task_id=task_id, task_name=task.name)
        BACKFILL_TASKS_SUBMITTED_TOTAL.labels(task=task.name).inc()
        self._queue.put((task_id, task))
        return task_id

    def status(self, task_id: str) -> dict[str, object]:
        with self._lock:
            record = self._records.get(task_id)
            if record is None:
                raise KeyError(f"Unknown task_id: {task_id}")
            return {
                "task_id": task_id,
                "name": record.name,
                "status": record.status,
                "submitted_at": record.submitted_at,
                "started_at": record.started_at,
                "finished_at": record.finished_at,
                "error": record.error,
            }

    def pending(self) -> int:
        """Number of tasks queued or running."""
        with self._lock:
            return sum(
                1
                for record in self._records.values()
                if record.status in (_STATUS_QUEUED, _STATUS_RUNNING)
            )

    def join(self) -> None:
        """Block until every submitted task has finished."""
        self._queue.join()

    def shutdown(self, *, wait: bool = True, timeout: float | None = None) -> None:
        """Stop accepting tasks; queued tasks still run before the worker exits."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
        self._queue.put(_SHUTDOWN)
        if wait:
            self._worker.join(timeout)

    # Internal helpers -------------------------------------------------

    def _run_worker(self) -> None:
        while True:
            item = self._queue.get()
            try:
                if item is _SHUTDOWN:
                    return
                assert isinstance(item, tuple)
                task_id, task = item
                self._execute(task_id, task)
            finally:
                self._queue.task_done()

    def _execute(self, task_id: str, task: BackfillTaskProtocol) -> None:
        with self._lock:
            record = self._records[task_id]
            record.status = _STATUS_RUNNING
            record.started_at = time.time()

        bind_context(task_id=task_id)
        start_time = time.perf_counter()
        try:
            task.run()
        except Exception as exc:  # noqa: BLE001
            duration = time.perf_counter() - start_time
            BACKFILL_DURATION_SECONDS.labels(task="queue").observe(duration)
            logger.exception("backfill_task_failed", task_id=task_id, task_name=task.name)
            with self._lock:
                record.status = _STATUS_FAILED
                record.finished_at = time.time()
                record.error = f"{type(exc).__name__}: {exc}"
        else:
            duration = time.perf_counter() - start_time
            BACKFILL_DURATION_SECONDS.labels(task="queue").observe(duration)
            logger.info(
                "backfill_task_completed",
                task_id=task_id,
                task_name=task.name,
                duration_seconds=duration,
            )
            with self._lock:
                record.status = _STATUS_SUCCEEDED
                record.finished_at = time.time()
        finally:
            unbind_context("task_id")


__all__ = ["SerialBackfillQueue", "TaskRecord"]
