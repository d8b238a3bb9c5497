"""Outbound HTTP calls executed as durable steps."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Optional

import httpx

from .contracts import CallRequest, CallResult
from .exceptions import SuspendWorkflow, TransportError
from .ledger import StepLedger
from .persistence import CallAttempt, StepKind, StepRecord, WorkflowRepository
from .utils.clock import Clock, seconds_until, utcnow
from .utils.retry import RetryPolicy

logger = logging.getLogger(__name__)


class CallScheduler:
    """Issues call steps, persisting every attempt before it is promoted.

    A step result is promoted from the persisted attempts, so an invocation
    that crashed after receiving a response never sends the request again.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        client: Optional[httpx.AsyncClient] = None,
        *,
        timeout: float = 30.0,
        max_concurrency: int = 10,
        clock: Clock = utcnow,
    ) -> None:
        self.repository = repository
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._semaphore = asyncio.Semaphore(max_concurrency)
        self._clock = clock

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def execute(
        self,
        ledger: StepLedger,
        *,
        index: int,
        name: str,
        fingerprint: str,
        request: CallRequest,
        policy: RetryPolicy,
    ) -> StepRecord:
        """Resolve call step ``index`` or suspend until its next retry."""
        attempts = await self.repository.list_call_attempts(ledger.run_id, index)

        for previous in attempts:
            if previous.has_response:
                logger.info(
                    f"Promoting persisted response for call '{name}' run_id={ledger.run_id}"
                )
                return await self._promote(ledger, index, name, fingerprint, previous)

        last = attempts[-1] if attempts else None
        if last is not None:
            if not policy.allows(last.attempt):
                return await self._promote(ledger, index, name, fingerprint, last)
            if last.next_retry_at is not None:
                now = self._clock()
                if now < last.next_retry_at:
                    raise SuspendWorkflow(
                        seconds_until(last.next_retry_at, now),
                        f"call '{name}' waiting for retry {last.attempt + 1}",
                        index,
                    )

        attempt = await self._attempt(
            ledger.run_id, index, (last.attempt + 1) if last else 1, request, policy
        )
        await self.repository.record_call_attempt(attempt)

        if attempt.has_response or attempt.next_retry_at is None:
            return await self._promote(ledger, index, name, fingerprint, attempt)

        delay = seconds_until(attempt.next_retry_at, self._clock())
        logger.warning(
            f"Call '{name}' attempt {attempt.attempt} failed for run_id={ledger.run_id}: "
            f"{attempt.error}; retrying in {delay:.2f}s"
        )
        raise SuspendWorkflow(delay, f"call '{name}' retry {attempt.attempt + 1}", index)

    async def _attempt(
        self,
        run_id: str,
        index: int,
        number: int,
        request: CallRequest,
        policy: RetryPolicy,
    ) -> CallAttempt:
        started_at = self._clock()
        timeout = request.timeout if request.timeout is not None else self.timeout
        async with self._semaphore:
            try:
                response = await self.client.request(
                    request.method,
                    request.url,
                    content=request.encoded_body(),
                    headers=request.headers,
                    timeout=timeout,
                )
            except httpx.TransportError as exc:
                completed_at = self._clock()
                next_retry_at = None
                if policy.allows(number):
                    next_retry_at = completed_at + timedelta(seconds=policy.delay_for(number))
                return CallAttempt(
                    run_id=run_id,
                    step_index=index,
                    attempt=number,
                    error=f"{type(exc).__name__}: {exc}",
                    started_at=started_at,
                    completed_at=completed_at,
                    next_retry_at=next_retry_at,
                )

        headers: dict[str, list[str]] = {}
        for key, value in response.headers.multi_items():
            headers.setdefault(key.lower(), []).append(value)

        logger.debug(
            f"{request.method} {request.url} -> {response.status_code} for run_id={run_id} step {index}"
        )
        return CallAttempt(
            run_id=run_id,
            step_index=index,
            attempt=number,
            status=response.status_code,
            headers=headers,
            body=response.text or "",
            started_at=started_at,
            completed_at=self._clock(),
        )

    async def _promote(
        self,
        ledger: StepLedger,
        index: int,
        name: str,
        fingerprint: str,
        attempt: CallAttempt,
    ) -> StepRecord:
        record = StepRecord(
            run_id=ledger.run_id,
            index=index,
            kind=StepKind.CALL,
            name=name,
            input_fingerprint=fingerprint,
            result_body=(attempt.body or "") if attempt.has_response else None,
            result_status=attempt.status,
            result_headers=attempt.headers,
            error=attempt.error,
            completed_at=attempt.completed_at or self._clock(),
        )
        return await ledger.append(record)

    @staticmethod
    def to_result(record: StepRecord) -> CallResult:
        """Turn a call record into the value workflow code receives."""
        if record.result_status is None:
            raise TransportError(record.name, record.error or "no response received")
        return CallResult(
            status=record.result_status,
            headers=record.result_headers,
            body=record.result_body or "",
        )
