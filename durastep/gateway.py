"""Invocation gateway: the entry point every trigger and continuation hits."""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import uuid
from typing import Any, Callable, Optional

import httpx

from .calls import CallScheduler
from .config import DurastepConfig, load_config
from .constants import (
    DEFAULT_CONTINUATION_TOPIC,
    DEFAULT_LEASE_RETRY_DELAY,
    DEFAULT_LEASE_TTL,
    DEFAULT_WORKFLOW_RETRIES,
    ENGINE_HEADERS,
    RESUME_HEADER,
    RUN_ID_HEADER,
    RUN_ID_PREFIX,
    SIGNATURE_HEADER,
)
from .context import parse_payload
from .contracts import GatewayRequest, GatewayResponse, InvocationMessage
from .exceptions import AuthError, LeaseLost, RunNotFoundError
from .execute import Cancelled, Completed, Failed, ReplayExecutor, Suspended, Workflow
from .ledger import StepLedger
from .persistence import RunStatus, WorkflowRepository, WorkflowRun, get_repository
from .security import SignatureReceiver
from .timers import DurableTimer
from .transports import BaseTransport, get_transport
from .utils.clock import Clock, utcnow
from .utils.retry import compute_backoff

logger = logging.getLogger(__name__)

# Transport-level headers that must not be replayed onto continuations.
_HOP_HEADERS = frozenset({"host", "content-length", "transfer-encoding", "connection"})


def new_run_id() -> str:
    return f"{RUN_ID_PREFIX}{uuid.uuid4().hex}"


def terminal_response(run: WorkflowRun) -> GatewayResponse:
    """Response for a run that has finished.

    Built only from stored state, so every delivery after completion sees
    the same bytes.
    """
    if run.status == RunStatus.COMPLETED:
        return GatewayResponse.from_payload(
            200, {"workflowRunId": run.run_id, "result": json.loads(run.result or "null")}
        )
    if run.status == RunStatus.FAILED:
        return GatewayResponse.from_payload(
            500,
            {"workflowRunId": run.run_id, "error": run.error, "stepIndex": run.failed_step},
        )
    return GatewayResponse.from_payload(
        200, {"workflowRunId": run.run_id, "status": run.status.value}
    )


class InvocationGateway:
    """Validates a delivery, replays the run and reports the outcome.

    Suspension publishes a continuation on the transport; the next delivery
    of that continuation re-enters ``handle``.
    """

    def __init__(
        self,
        workflow: Workflow,
        *,
        repository: WorkflowRepository,
        transport: BaseTransport,
        topic: str = DEFAULT_CONTINUATION_TOPIC,
        receiver: Optional[SignatureReceiver] = None,
        call_scheduler: Optional[CallScheduler] = None,
        timer: Optional[DurableTimer] = None,
        retries: int = DEFAULT_WORKFLOW_RETRIES,
        base_url: Optional[str] = None,
        lease_ttl: float = DEFAULT_LEASE_TTL,
        lease_retry_delay: float = DEFAULT_LEASE_RETRY_DELAY,
        retry_backoff: Callable[[int], float] = compute_backoff,
        payload_parser: Callable[[Optional[str]], Any] = parse_payload,
        default_call_retries: int = 0,
        clock: Clock = utcnow,
        owner_id: Optional[str] = None,
    ) -> None:
        if retries < 0:
            raise ValueError("retries must be >= 0")
        self.repository = repository
        self.transport = transport
        self.topic = topic
        self.receiver = receiver
        self.retries = retries
        self.base_url = base_url
        self.lease_ttl = lease_ttl
        self.lease_retry_delay = lease_retry_delay
        self.retry_backoff = retry_backoff
        self.owner_id = owner_id or f"gateway-{uuid.uuid4().hex[:12]}"
        self._clock = clock
        self.calls = call_scheduler or CallScheduler(repository, clock=clock)
        self.timer = timer or DurableTimer(repository, clock=clock)
        self.executor = ReplayExecutor(
            workflow,
            repository,
            self.calls,
            self.timer,
            payload_parser=payload_parser,
            default_call_retries=default_call_retries,
            clock=clock,
        )
        self._pending: set[asyncio.Task] = set()

    async def handle(self, request: GatewayRequest) -> GatewayResponse:
        if self.receiver is not None:
            try:
                self.receiver.verify(
                    request.header(SIGNATURE_HEADER), request.body, url=request.url
                )
            except AuthError as exc:
                logger.warning(f"Rejected delivery to {request.url}: {exc}")
                return GatewayResponse.from_payload(401, {"error": str(exc)})

        resume = (request.header(RESUME_HEADER) or "").lower() == "true"
        run_id = request.header(RUN_ID_HEADER)
        if resume and not run_id:
            return GatewayResponse.from_payload(404, {"error": "resume delivery without run id"})
        run_id = run_id or new_run_id()

        run = await self.repository.get_run(run_id)
        if run is None:
            if resume:
                error = RunNotFoundError(run_id)
                logger.warning(str(error))
                return GatewayResponse.from_payload(
                    404, {"workflowRunId": run_id, "error": str(error)}
                )
            headers = {
                k: v
                for k, v in request.headers.items()
                if k.lower() not in ENGINE_HEADERS and k.lower() not in _HOP_HEADERS
            }
            run = await self.repository.create_run(
                WorkflowRun(run_id=run_id, url=request.url, payload=request.body, headers=headers)
            )
            logger.info(f"Started workflow run_id={run_id} at {request.url}")

        if run.status.is_terminal:
            logger.info(f"Run {run_id} is {run.status.value}; answering from stored state")
            return terminal_response(run)

        # One token per delivery, so concurrent deliveries on this gateway exclude each other
        token = f"{self.owner_id}:{uuid.uuid4().hex}"
        if not await self.repository.acquire_lease(run_id, token, self.lease_ttl):
            logger.info(
                f"Run {run_id} is being replayed elsewhere; redelivering in {self.lease_retry_delay}s"
            )
            await self._schedule(run, self.lease_retry_delay, "lease busy")
            return self._busy(run_id)

        heartbeat = asyncio.create_task(self._keep_lease(run_id, token))
        try:
            return await self._replay(run_id, token)
        except LeaseLost:
            logger.warning(f"Run {run_id} was taken over by another replay; stopping")
            return self._busy(run_id)
        finally:
            heartbeat.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await heartbeat
            await self.repository.release_lease(run_id, token)

    @staticmethod
    def _busy(run_id: str) -> GatewayResponse:
        return GatewayResponse.from_payload(202, {"workflowRunId": run_id, "status": "busy"})

    async def _keep_lease(self, run_id: str, token: str) -> None:
        """Renew the lease every third of its TTL until cancelled or lost."""
        while True:
            await asyncio.sleep(self.lease_ttl / 3)
            if not await self.repository.acquire_lease(run_id, token, self.lease_ttl):
                logger.warning(f"Could not renew lease on run {run_id}")
                return

    async def _replay(self, run_id: str, token: str) -> GatewayResponse:
        run = await self.repository.get_run(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        if run.status.is_terminal:
            return terminal_response(run)

        ledger = StepLedger(self.repository, run_id, run.steps)
        outcome = await self.executor.execute(
            run,
            ledger,
            renew_lease=lambda: self.repository.acquire_lease(run_id, token, self.lease_ttl),
        )

        if isinstance(outcome, Suspended):
            run.status = RunStatus.SUSPENDED
            await self.repository.save_run(run)
            await self._schedule(run, outcome.delay, outcome.reason)
            return GatewayResponse.from_payload(
                200, {"workflowRunId": run_id, "status": "suspended"}
            )

        if isinstance(outcome, Completed):
            run.status = RunStatus.COMPLETED
            run.result = outcome.result_text
            run.error = None
            run.failed_step = None
            await self.repository.save_run(run)
            logger.info(f"Run {run_id} completed after {len(ledger)} steps")

        elif isinstance(outcome, Failed):
            if outcome.retryable and run.attempt < self.retries:
                run.attempt += 1
                run.status = RunStatus.SUSPENDED
                run.error = outcome.message
                await self.repository.save_run(run)
                delay = self.retry_backoff(run.attempt)
                logger.warning(
                    f"Run {run_id} failed at step {outcome.step_index}; "
                    f"retry {run.attempt}/{self.retries} in {delay:.2f}s"
                )
                await self._schedule(run, delay, f"workflow retry {run.attempt}")
                return GatewayResponse.from_payload(
                    200,
                    {"workflowRunId": run_id, "status": "retrying", "attempt": run.attempt},
                )
            run.status = RunStatus.FAILED
            run.error = outcome.message
            run.failed_step = outcome.step_index
            await self.repository.save_run(run)
            logger.error(f"Run {run_id} failed at step {outcome.step_index}: {outcome.message}")

        elif isinstance(outcome, Cancelled):
            logger.info(f"Run {run_id} stopped after cancellation")

        stored = await self.repository.get_run(run_id)
        return terminal_response(stored or run)

    def continuation_url(self, url: Optional[str]) -> str:
        """Rewrite ``url`` onto ``base_url`` when one is configured."""
        if not url:
            raise ValueError("run has no url to continue at")
        if not self.base_url:
            return url
        base = httpx.URL(self.base_url)
        return str(httpx.URL(url).copy_with(scheme=base.scheme, host=base.host, port=base.port))

    async def _schedule(self, run: WorkflowRun, delay: float, reason: str) -> None:
        """Record the delivery deadline, then publish the continuation in the background.

        The stored deadline lets ``ContinuationWorker.sweep_runs`` republish
        the continuation if the publish never reaches the broker.
        """
        message = InvocationMessage.delayed(
            delay,
            now=self._clock(),
            run_id=run.run_id,
            url=self.continuation_url(run.url),
            body=run.payload or "",
            headers=run.headers,
            resume=True,
            reason=reason,
            attempt=run.attempt,
        )
        await self.repository.schedule_delivery(run.run_id, message.not_before)
        task = asyncio.create_task(self._publish(message))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _publish(self, message: InvocationMessage) -> None:
        try:
            await self.transport.publish(self.topic, message)
        except Exception as e:
            logger.error(f"Failed to publish continuation for run_id={message.run_id}: {e}")
            raise
        logger.debug(
            f"Published continuation for run_id={message.run_id} not before {message.not_before.isoformat()}"
        )

    async def drain(self) -> None:
        """Wait until every scheduled continuation has been published."""
        while self._pending:
            await asyncio.gather(*list(self._pending))

    async def aclose(self) -> None:
        await self.drain()
        await self.calls.aclose()


def serve(
    workflow: Workflow,
    config: Optional[DurastepConfig] = None,
    *,
    repository: Optional[WorkflowRepository] = None,
    transport: Optional[BaseTransport] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    clock: Clock = utcnow,
    **kwargs: Any,
) -> InvocationGateway:
    """Build a gateway for ``workflow`` from configuration."""
    config = config or load_config()
    repository = repository or get_repository(config=config)
    transport = transport or get_transport(config=config, clock=clock)
    calls = CallScheduler(
        repository,
        http_client,
        timeout=config.call.timeout,
        max_concurrency=config.call.max_concurrency,
        clock=clock,
    )
    return InvocationGateway(
        workflow,
        repository=repository,
        transport=transport,
        topic=config.transport.topic,
        receiver=SignatureReceiver.from_config(config.signing),
        call_scheduler=calls,
        retries=config.retries,
        base_url=config.base_url,
        lease_ttl=config.lease_ttl,
        lease_retry_delay=config.lease_retry_delay,
        default_call_retries=config.call.retries,
        clock=clock,
        **kwargs,
    )
