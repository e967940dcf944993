"""Port definition for backfill task scheduling."""

from __future__ import annotations

from typing import Protocol, runtime_checkable


class BackfillTaskProtocol(Protocol):
    """Unit of backfill work for a single channel."""

    @property
    def name(self) -> str:
        """Human-readable task label used in logs and metrics."""

    def run(self) -> None:
        """Execute the task to completion."""


@runtime_checkable
class BackfillSchedulerProtocol(Protocol):
    """Interface for submitting backfill tasks to a shared worker."""

    def submit(self, task: BackfillTaskProtocol) -> str:
        """Schedule a task for execution.

        Args:
            task: Task to run.

        Returns:
            Unique identifier for the submitted task.
        """


__all__ = ["BackfillSchedulerProtocol", "BackfillTaskProtocol"]
