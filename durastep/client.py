"""Client for starting and managing workflow runs."""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, Optional

from .constants import DEFAULT_CONTINUATION_TOPIC
from .contracts import InvocationMessage
from .gateway import new_run_id
from .persistence import WorkflowRepository, WorkflowRun, get_repository
from .transports import BaseTransport
from .utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class WorkflowClient:
    """Triggers runs through the broker and inspects them in the repository."""

    def __init__(
        self,
        transport: BaseTransport,
        repository: Optional[WorkflowRepository] = None,
        topic: str = DEFAULT_CONTINUATION_TOPIC,
        clock: Clock = utcnow,
    ) -> None:
        self._transport = transport
        self._repository = repository or get_repository()
        self.topic = topic
        self._clock = clock

    async def trigger(
        self,
        url: str,
        body: Any = None,
        headers: Optional[Dict[str, str]] = None,
        run_id: Optional[str] = None,
        delay: float = 0.0,
    ) -> str:
        """Queue the first delivery of a new run and return its id.

        String bodies are sent as-is; other values are JSON-encoded.
        """
        run_id = run_id or new_run_id()
        if body is None:
            text = ""
        elif isinstance(body, str):
            text = body
        else:
            text = json.dumps(body)
        message = InvocationMessage.delayed(
            delay,
            now=self._clock(),
            run_id=run_id,
            url=url,
            body=text,
            headers=headers or {},
            resume=False,
            reason="trigger",
        )
        await self._transport.publish(self.topic, message)
        logger.info(f"Triggered run_id={run_id} at {url}")
        return run_id

    async def cancel(self, run_id: str) -> bool:
        cancelled = await self._repository.cancel_run(run_id)
        if cancelled:
            logger.info(f"Cancelled run_id={run_id}")
        return cancelled

    async def get_run(self, run_id: str) -> WorkflowRun | None:
        return await self._repository.get_run(run_id)
