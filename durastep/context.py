"""The ``context`` object handed to workflow functions."""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, AsyncIterator, Awaitable, Callable, Dict, Optional, Tuple

import httpx

from .contracts import CallRequest, CallResult
from .exceptions import DeterminismViolationError, LeaseLost, WorkflowEngineError
from .ledger import StepLedger, fingerprint
from .persistence import StepKind, StepRecord, WorkflowRun
from .utils.retry import RetryPolicy, compute_backoff

if TYPE_CHECKING:
    from .execute import ReplayExecutor


def parse_payload(raw: Optional[str]) -> Any:
    """Default parser for the initial request body.

    Empty bodies become ``None``, JSON text is decoded and anything else is
    returned as the raw string.
    """
    if raw is None or raw == "":
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return raw


def _as_utc(when: datetime | float | int) -> datetime:
    if isinstance(when, datetime):
        if when.tzinfo is None:
            raise ValueError("sleep_until requires a timezone-aware datetime")
        return when.astimezone(timezone.utc)
    return datetime.fromtimestamp(float(when), tz=timezone.utc)


class WorkflowContext:
    """Step API for one invocation of a workflow.

    Every step method takes the next index from an explicit counter, so the
    same code path always produces the same index sequence. Steps must be
    awaited one at a time.
    """

    def __init__(
        self,
        run: WorkflowRun,
        ledger: StepLedger,
        executor: "ReplayExecutor",
        request_payload: Any = None,
        renew_lease: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> None:
        self.run_id = run.run_id
        self.url = run.url
        self.headers = httpx.Headers(run.headers)
        self.request_payload = request_payload
        self._ledger = ledger
        self._executor = executor
        self._renew_lease = renew_lease
        self._next_index = 0
        self._in_step = False
        self.current_index: Optional[int] = None

    @property
    def steps_visited(self) -> int:
        return self._next_index

    def _claim(
        self, kind: StepKind, name: str, inputs: Any
    ) -> Tuple[int, str, Optional[StepRecord]]:
        index = self._next_index
        self._next_index += 1
        self.current_index = index
        digest = fingerprint(kind, name, inputs)
        record = self._ledger.get(index)
        if record is not None and (
            record.kind != kind or record.name != name or record.input_fingerprint != digest
        ):
            raise DeterminismViolationError(
                self.run_id,
                index,
                f"{record.kind.value} '{record.name}'",
                f"{kind.value} '{name}'",
            )
        return index, digest, record

    @asynccontextmanager
    async def _step(
        self, kind: StepKind, name: str, inputs: Any = None
    ) -> AsyncIterator[Tuple[int, str, Optional[StepRecord]]]:
        if self._in_step:
            raise WorkflowEngineError(
                f"step '{name}' started while another step is in flight; await steps one at a time"
            )
        self._in_step = True
        try:
            yield self._claim(kind, name, inputs)
        finally:
            self._in_step = False

    async def _before_new_step(self) -> None:
        """Confirm this replay still owns the run before a step executes for real."""
        if self._renew_lease is not None and not await self._renew_lease():
            raise LeaseLost(self.run_id)
        await self._executor.ensure_active(self.run_id)

    # ------------------------------------------------------------------
    async def run(
        self, step_name: str, fn: Callable[..., Any | Awaitable[Any]], *args: Any, **kwargs: Any
    ) -> Any:
        """Run ``fn`` once and persist its JSON-serializable result."""
        async with self._step(StepKind.GENERIC, step_name) as (index, digest, record):
            if record is None:
                await self._before_new_step()
                record = await self._executor.run_generic(
                    self._ledger, index, step_name, digest, fn, args, kwargs
                )
        return json.loads(record.result_body) if record.result_body is not None else None

    async def call(
        self,
        step_name: str,
        url: str,
        *,
        method: str = "GET",
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        retries: Optional[int] = None,
        backoff: Optional[Callable[[int], float]] = None,
        timeout: Optional[float] = None,
    ) -> CallResult:
        """Issue an HTTP request as a durable step.

        Any HTTP response, whatever its status, is the step result. Only
        transport failures are retried, ``retries`` times at most.
        """
        request = CallRequest(
            url=url,
            method=method.upper(),
            body=body,
            headers=headers or {},
            timeout=timeout,
        )
        policy = RetryPolicy(
            max_retries=self._executor.default_call_retries if retries is None else retries,
            backoff=backoff or compute_backoff,
        )
        async with self._step(
            StepKind.CALL, step_name, request.fingerprint_inputs()
        ) as (index, digest, record):
            if record is None:
                await self._before_new_step()
                record = await self._executor.calls.execute(
                    self._ledger,
                    index=index,
                    name=step_name,
                    fingerprint=digest,
                    request=request,
                    policy=policy,
                )
        return self._executor.calls.to_result(record)

    async def sleep(self, step_name: str, duration: float) -> None:
        """Suspend the run for ``duration`` seconds."""
        seconds = float(duration)
        if seconds < 0:
            raise ValueError("sleep duration must be >= 0")
        async with self._step(StepKind.SLEEP, step_name, {"seconds": seconds}) as (
            index,
            digest,
            record,
        ):
            if record is None:
                await self._before_new_step()
            await self._executor.timer.wait(
                self._ledger,
                index=index,
                name=step_name,
                fingerprint=digest,
                record=record,
                duration=seconds,
            )

    async def sleep_until(self, step_name: str, when: datetime | float | int) -> None:
        """Suspend the run until ``when`` (aware datetime or unix timestamp)."""
        wake_at = _as_utc(when)
        async with self._step(
            StepKind.SLEEP, step_name, {"until": wake_at.isoformat()}
        ) as (index, digest, record):
            if record is None:
                await self._before_new_step()
            await self._executor.timer.wait(
                self._ledger,
                index=index,
                name=step_name,
                fingerprint=digest,
                record=record,
                wake_at=wake_at,
            )

    async def cancel(self) -> None:
        """Cancel this run from inside the workflow."""
        await self._executor.cancel(self.run_id)
