"""Repository abstraction for the step ledger and run state."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from .models import CallAttempt, RunStatus, StepRecord, TimerEntry, WorkflowRun


class WorkflowRepository(Protocol):
    """Protocol for ledger persistence backends."""

    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        """Insert ``run`` unless it exists; return the stored run."""

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        """Retrieve a run together with its ordered step ledger."""

    async def get_status(self, run_id: str) -> RunStatus | None:
        """Return only the status of a run."""

    async def list_runs(self) -> list[WorkflowRun]:
        """Return all persisted runs (without steps)."""

    async def save_run(self, run: WorkflowRun) -> None:
        """Persist run-level fields. Never overwrites a cancelled run."""

    async def cancel_run(self, run_id: str) -> bool:
        """Mark a non-terminal run cancelled. Return True if it changed."""

    async def append_step(self, record: StepRecord) -> None:
        """Append a ledger record.

        Raises:
            DuplicateStepError: a record with different content already
                exists at ``(record.run_id, record.index)``.
        """

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        """Return ledger records ordered by index."""

    async def record_call_attempt(self, attempt: CallAttempt) -> None:
        """Persist one call attempt."""

    async def list_call_attempts(
        self, run_id: str, step_index: int
    ) -> list[CallAttempt]:
        """Return attempts for a call step ordered by attempt number."""

    async def put_timer(self, entry: TimerEntry) -> TimerEntry:
        """Insert a timer unless one exists; return the stored timer."""

    async def get_timer(self, run_id: str, step_index: int) -> TimerEntry | None:
        """Return the timer for a sleep step."""

    async def mark_timer_fired(
        self, run_id: str, step_index: int, fired_at: datetime
    ) -> None:
        """Set ``fired_at`` on the first fire only."""

    async def list_due_timers(self, now: datetime) -> list[TimerEntry]:
        """Return unfired timers whose wake time has passed."""

    async def acquire_lease(self, run_id: str, owner: str, ttl: float) -> bool:
        """Take or renew the run lease for ``owner``."""

    async def release_lease(self, run_id: str, owner: str) -> None:
        """Drop the run lease if ``owner`` holds it."""

    async def schedule_delivery(self, run_id: str, deliver_at: datetime) -> None:
        """Record when the next delivery of an unfinished run is due."""

    async def list_overdue_runs(self, now: datetime) -> list[WorkflowRun]:
        """Return unfinished runs whose next delivery is due by ``now``."""
