"""In-memory implementation of the workflow repository."""

from __future__ import annotations

import time
from datetime import datetime
from typing import Dict, Tuple

from ..exceptions import DuplicateStepError
from ..utils.clock import utcnow
from .models import CallAttempt, RunStatus, StepRecord, TimerEntry, WorkflowRun
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflow state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts.
    """

    def __init__(self) -> None:
        self._runs: Dict[str, WorkflowRun] = {}
        self._steps: Dict[str, Dict[int, StepRecord]] = {}
        self._attempts: Dict[Tuple[str, int], Dict[int, CallAttempt]] = {}
        self._timers: Dict[Tuple[str, int], TimerEntry] = {}
        self._leases: Dict[str, Tuple[str, float]] = {}

    # ------------------------------------------------------------------
    async def create_run(self, run: WorkflowRun) -> WorkflowRun:
        stored = self._runs.get(run.run_id)
        if stored is None:
            stored = run.model_copy(deep=True, update={"steps": []})
            self._runs[run.run_id] = stored
            self._steps.setdefault(run.run_id, {})
        return await self.get_run(run.run_id)

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        run = self._runs.get(run_id)
        if run is None:
            return None
        return run.model_copy(deep=True, update={"steps": await self.get_steps(run_id)})

    async def get_status(self, run_id: str) -> RunStatus | None:
        run = self._runs.get(run_id)
        return run.status if run else None

    async def list_runs(self) -> list[WorkflowRun]:
        return [run.model_copy(deep=True) for run in self._runs.values()]

    async def save_run(self, run: WorkflowRun) -> None:
        stored = self._runs.get(run.run_id)
        if stored is not None and stored.status == RunStatus.CANCELLED:
            return
        next_delivery_at = stored.next_delivery_at if stored else run.next_delivery_at
        self._runs[run.run_id] = run.model_copy(
            deep=True,
            update={"steps": [], "updated_at": utcnow(), "next_delivery_at": next_delivery_at},
        )

    async def cancel_run(self, run_id: str) -> bool:
        run = self._runs.get(run_id)
        if run is None or run.status.is_terminal:
            return False
        run.status = RunStatus.CANCELLED
        run.updated_at = utcnow()
        return True

    async def schedule_delivery(self, run_id: str, deliver_at: datetime) -> None:
        run = self._runs.get(run_id)
        if run is not None and not run.status.is_terminal:
            run.next_delivery_at = deliver_at

    async def list_overdue_runs(self, now: datetime) -> list[WorkflowRun]:
        return [
            run.model_copy(deep=True)
            for run in self._runs.values()
            if not run.status.is_terminal
            and run.next_delivery_at is not None
            and run.next_delivery_at <= now
        ]

    # ------------------------------------------------------------------
    async def append_step(self, record: StepRecord) -> None:
        steps = self._steps.setdefault(record.run_id, {})
        existing = steps.get(record.index)
        if existing is not None:
            if existing.same_content(record):
                return
            raise DuplicateStepError(record.run_id, record.index)
        steps[record.index] = record

    async def get_steps(self, run_id: str) -> list[StepRecord]:
        steps = self._steps.get(run_id, {})
        return [steps[i] for i in sorted(steps)]

    async def record_call_attempt(self, attempt: CallAttempt) -> None:
        attempts = self._attempts.setdefault((attempt.run_id, attempt.step_index), {})
        attempts.setdefault(attempt.attempt, attempt.model_copy())

    async def list_call_attempts(
        self, run_id: str, step_index: int
    ) -> list[CallAttempt]:
        attempts = self._attempts.get((run_id, step_index), {})
        return [attempts[n] for n in sorted(attempts)]

    # ------------------------------------------------------------------
    async def put_timer(self, entry: TimerEntry) -> TimerEntry:
        key = (entry.run_id, entry.step_index)
        if key not in self._timers:
            self._timers[key] = entry.model_copy()
        return self._timers[key].model_copy()

    async def get_timer(self, run_id: str, step_index: int) -> TimerEntry | None:
        timer = self._timers.get((run_id, step_index))
        return timer.model_copy() if timer else None

    async def mark_timer_fired(
        self, run_id: str, step_index: int, fired_at: datetime
    ) -> None:
        timer = self._timers.get((run_id, step_index))
        if timer and timer.fired_at is None:
            timer.fired_at = fired_at

    async def list_due_timers(self, now: datetime) -> list[TimerEntry]:
        return [
            t.model_copy()
            for t in self._timers.values()
            if t.fired_at is None and t.wake_at <= now
        ]

    # ------------------------------------------------------------------
    async def acquire_lease(self, run_id: str, owner: str, ttl: float) -> bool:
        now = time.monotonic()
        held = self._leases.get(run_id)
        if held and held[0] != owner and held[1] > now:
            return False
        self._leases[run_id] = (owner, now + ttl)
        return True

    async def release_lease(self, run_id: str, owner: str) -> None:
        held = self._leases.get(run_id)
        if held and held[0] == owner:
            del self._leases[run_id]
