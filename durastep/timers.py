"""Durable timers backing sleep steps."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from .exceptions import SuspendWorkflow
from .ledger import StepLedger
from .persistence import StepKind, StepRecord, TimerEntry, WorkflowRepository
from .utils.clock import Clock, seconds_until, utcnow

logger = logging.getLogger(__name__)


class DurableTimer:
    def __init__(self, repository: WorkflowRepository, clock: Clock = utcnow) -> None:
        self.repository = repository
        self._clock = clock

    async def wait(
        self,
        ledger: StepLedger,
        *,
        index: int,
        name: str,
        fingerprint: str,
        record: Optional[StepRecord],
        duration: Optional[float] = None,
        wake_at: Optional[datetime] = None,
    ) -> None:
        """Return once the sleep at ``index`` is over, suspending until then.

        The first visit records the wake time in the ledger, so later visits
        compare against the original deadline rather than a fresh one.
        """
        now = self._clock()
        if record is None:
            if wake_at is None:
                wake_at = now + timedelta(seconds=duration or 0.0)
            record = await ledger.append(
                StepRecord(
                    run_id=ledger.run_id,
                    index=index,
                    kind=StepKind.SLEEP,
                    name=name,
                    input_fingerprint=fingerprint,
                    wake_at=wake_at,
                    completed_at=now,
                )
            )

        timer = await self.repository.get_timer(ledger.run_id, index)
        if timer is None:
            timer = await self.repository.put_timer(
                TimerEntry(
                    run_id=ledger.run_id,
                    step_index=index,
                    wake_at=record.wake_at or now,
                    created_at=now,
                )
            )
        if timer.fired_at is not None:
            return

        if now >= timer.wake_at:
            await self.repository.mark_timer_fired(ledger.run_id, index, now)
            logger.info(f"Timer '{name}' fired for run_id={ledger.run_id} step {index}")
            return

        raise SuspendWorkflow(seconds_until(timer.wake_at, now), f"sleep '{name}'", index)

    async def due(self, now: Optional[datetime] = None) -> list[TimerEntry]:
        """Unfired timers whose wake time has passed."""
        return await self.repository.list_due_timers(now or self._clock())
