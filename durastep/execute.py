"""Deterministic replay executor for durastep workflows."""

from __future__ import annotations

import inspect
import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Union

from .calls import CallScheduler
from .context import WorkflowContext, parse_payload
from .exceptions import (
    DeterminismViolationError,
    StepExecutionError,
    SuspendWorkflow,
    WorkflowCancelled,
    WorkflowEngineError,
)
from .ledger import StepLedger
from .persistence import RunStatus, StepKind, StepRecord, WorkflowRepository, WorkflowRun
from .timers import DurableTimer
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

Workflow = Callable[[WorkflowContext], Awaitable[Any]]


@dataclass
class Completed:
    result: Any
    result_text: str


@dataclass
class Suspended:
    delay: float
    reason: str
    step_index: int


@dataclass
class Failed:
    error: WorkflowEngineError
    step_index: Optional[int]
    retryable: bool

    @property
    def message(self) -> str:
        return str(self.error)


@dataclass
class Cancelled:
    run_id: str


Outcome = Union[Completed, Suspended, Failed, Cancelled]

# Engine errors fail the same way on every replay, so they are not retried.
_FATAL_ERRORS = (WorkflowEngineError,)


class ReplayExecutor:
    """Re-runs workflow code from the start, substituting ledger results.

    Only steps without a ledger record execute for real. The executor never
    raises for workflow outcomes; it returns one of ``Completed``,
    ``Suspended``, ``Failed`` or ``Cancelled``.
    """

    def __init__(
        self,
        workflow: Workflow,
        repository: WorkflowRepository,
        calls: CallScheduler,
        timer: DurableTimer,
        payload_parser: Callable[[Optional[str]], Any] = parse_payload,
        default_call_retries: int = 0,
        clock: Clock = utcnow,
    ) -> None:
        self.workflow = workflow
        self.repository = repository
        self.calls = calls
        self.timer = timer
        self.payload_parser = payload_parser
        self.default_call_retries = default_call_retries
        self._clock = clock

    async def execute(
        self,
        run: WorkflowRun,
        ledger: StepLedger,
        renew_lease: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> Outcome:
        """Replay ``run``.

        ``renew_lease`` is awaited before every step that executes for real;
        when it returns False, ``LeaseLost`` propagates to the caller.
        """
        context = WorkflowContext(
            run,
            ledger,
            self,
            request_payload=self.payload_parser(run.payload),
            renew_lease=renew_lease,
        )
        try:
            result = await self.workflow(context)
            if context.steps_visited < len(ledger):
                raise DeterminismViolationError(
                    run.run_id,
                    context.steps_visited,
                    f"{len(ledger)} recorded steps",
                    f"completion after {context.steps_visited} steps",
                )
        except SuspendWorkflow as signal:
            logger.info(
                f"Run {run.run_id} suspended at step {signal.step_index}: {signal.reason} (delay={signal.delay:.3f}s)"
            )
            return Suspended(signal.delay, signal.reason, signal.step_index)
        except WorkflowCancelled:
            logger.info(f"Run {run.run_id} cancelled")
            return Cancelled(run.run_id)
        except _FATAL_ERRORS as exc:
            logger.error(f"Run {run.run_id} failed at step {context.current_index}: {exc}")
            return Failed(exc, context.current_index, retryable=False)
        except Exception as exc:
            logger.warning(
                f"Workflow code raised for run_id={run.run_id} at step {context.current_index}: {exc!r}"
            )
            error = StepExecutionError(
                f"{type(exc).__name__}: {exc}", step_index=context.current_index
            )
            error.__cause__ = exc
            return Failed(error, context.current_index, retryable=True)

        try:
            result_text = json.dumps(result)
        except TypeError as exc:
            error = StepExecutionError(f"workflow result is not JSON serializable: {exc}")
            return Failed(error, context.current_index, retryable=False)
        return Completed(json.loads(result_text), result_text)

    async def ensure_active(self, run_id: str) -> None:
        """Raise ``WorkflowCancelled`` if the run was cancelled meanwhile."""
        if await self.repository.get_status(run_id) == RunStatus.CANCELLED:
            raise WorkflowCancelled(run_id)

    async def cancel(self, run_id: str) -> None:
        await self.repository.cancel_run(run_id)
        raise WorkflowCancelled(run_id)

    async def run_generic(
        self,
        ledger: StepLedger,
        index: int,
        name: str,
        digest: str,
        fn: Callable[..., Any],
        args: tuple,
        kwargs: dict,
    ) -> StepRecord:
        value = fn(*args, **kwargs)
        if inspect.isawaitable(value):
            value = await value
        record = StepRecord(
            run_id=ledger.run_id,
            index=index,
            kind=StepKind.GENERIC,
            name=name,
            input_fingerprint=digest,
            result_body=json.dumps(value),
            completed_at=self._clock(),
        )
        return await ledger.append(record)
