"""Continuation worker: turns due broker messages back into deliveries."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Optional

import httpx

from .constants import DEFAULT_CONTINUATION_TOPIC, SIGNATURE_HEADER
from .contracts import GatewayRequest, GatewayResponse, InvocationMessage
from .gateway import InvocationGateway
from .persistence import WorkflowRepository, WorkflowRun
from .security import SignatureReceiver
from .transports import BaseTransport
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class ContinuationWorker:
    """Listens on the continuation topic and redelivers each due message.

    With a ``gateway`` the delivery is handled in-process; otherwise it is
    POSTed to the message URL.
    """

    def __init__(
        self,
        transport: BaseTransport,
        *,
        gateway: Optional[InvocationGateway] = None,
        topic: str = DEFAULT_CONTINUATION_TOPIC,
        receiver: Optional[SignatureReceiver] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        repository: Optional[WorkflowRepository] = None,
        redelivery_delay: float = 5.0,
        clock: Clock = utcnow,
    ) -> None:
        self._transport = transport
        self._gateway = gateway
        self.topic = topic
        self._receiver = receiver
        self._http_client = http_client
        self._owns_client = http_client is None
        self._repository = repository or (gateway.repository if gateway else None)
        self.redelivery_delay = redelivery_delay
        self._clock = clock
        self.delivered = 0

    async def start(self, lifespan: Optional[float] = None) -> None:
        """Start listening for continuations on the configured topic."""
        async for raw_message, message in self._transport.subscribe(
            self.topic, lifespan=lifespan
        ):
            try:
                response = await self.deliver(message)
            except Exception as e:
                logger.error(
                    f"Delivery of message {message.message_id} for run_id={message.run_id} failed: {e}"
                )
                await self._transport.nack(raw_message, requeue=False)
                await self._transport.publish(
                    self.topic,
                    message.model_copy(
                        update={"not_before": self._clock() + timedelta(seconds=self.redelivery_delay)}
                    ),
                )
                continue
            await self._transport.ack(raw_message)
            self.delivered += 1
            logger.info(
                f"Delivered continuation for run_id={message.run_id}: {response.status_code}"
            )

    def build_request(self, message: InvocationMessage) -> GatewayRequest:
        """Gateway request for ``message``, signed at delivery time."""
        headers = message.delivery_headers()
        if self._receiver is not None:
            headers[SIGNATURE_HEADER] = self._receiver.sign(message.body, url=message.url)
        return GatewayRequest(method="POST", url=message.url, headers=headers, body=message.body)

    async def deliver(self, message: InvocationMessage) -> GatewayResponse:
        request = self.build_request(message)
        if self._gateway is not None:
            response = await self._gateway.handle(request)
            await self._gateway.drain()
            return response

        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        reply = await self._http_client.post(
            request.url, content=request.body.encode("utf-8"), headers=request.headers
        )
        if reply.status_code == 401:
            logger.warning(f"Gateway at {request.url} rejected the delivery signature")
        return GatewayResponse(
            status_code=reply.status_code, body=reply.text, headers=dict(reply.headers)
        )

    def _resume_message(self, run: WorkflowRun, reason: str) -> InvocationMessage:
        url = self._gateway.continuation_url(run.url) if self._gateway else run.url
        now = self._clock()
        return InvocationMessage(
            run_id=run.run_id,
            url=url,
            body=run.payload or "",
            headers=run.headers,
            resume=True,
            reason=reason,
            attempt=run.attempt,
            timestamp=now,
            not_before=now,
        )

    def _require_repository(self, operation: str) -> WorkflowRepository:
        if self._repository is None:
            raise ValueError(f"{operation} requires a repository")
        return self._repository

    async def sweep_timers(self, grace: float = 60.0) -> int:
        """Republish continuations for timers that should have fired by now.

        Covers continuations lost between a suspension and the broker.
        Duplicates are harmless because replay is idempotent.
        """
        repository = self._require_repository("sweep_timers")
        cutoff = self._clock() - timedelta(seconds=grace)
        published = 0
        for timer in await repository.list_due_timers(cutoff):
            run = await repository.get_run(timer.run_id)
            if run is None or run.status.is_terminal or not run.url:
                continue
            await self._transport.publish(
                self.topic, self._resume_message(run, f"timer sweep step {timer.step_index}")
            )
            published += 1
        if published:
            logger.info(f"Republished {published} overdue timer continuation(s)")
        return published

    async def sweep_runs(self, grace: float = 60.0) -> int:
        """Republish continuations for unfinished runs whose delivery is overdue.

        Recovers call retries, workflow retries and busy-lease redeliveries
        whose publish never reached the broker.
        """
        repository = self._require_repository("sweep_runs")
        cutoff = self._clock() - timedelta(seconds=grace)
        published = 0
        for run in await repository.list_overdue_runs(cutoff):
            if not run.url:
                continue
            await self._transport.publish(self.topic, self._resume_message(run, "delivery sweep"))
            published += 1
        if published:
            logger.info(f"Republished {published} overdue run continuation(s)")
        return published

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_client:
            await self._http_client.aclose()
            self._http_client = None
