"""In-memory transport for testing."""

from __future__ import annotations

import asyncio
from collections import defaultdict
from typing import Dict, List, Optional, Tuple

from ..contracts import InvocationMessage
from ..utils.clock import Clock, utcnow
from .base import BaseTransport

RawMessage = Tuple[str, InvocationMessage]


class InMemoryTransport(BaseTransport[RawMessage]):
    """Simple in-process delay queue for unit tests."""

    def __init__(self, clock: Clock = utcnow, poll_interval: float = 0.05) -> None:
        super().__init__(clock=clock, poll_interval=poll_interval)
        self._queues: Dict[str, List[RawMessage]] = defaultdict(list)
        self._lock = asyncio.Lock()

    async def publish(self, topic: str, message: InvocationMessage) -> None:
        async with self._lock:
            self._queues[topic].append((topic, message))

    def pending(self, topic: str) -> list[InvocationMessage]:
        """Messages not yet consumed, due or not, in publish order."""
        return [message for _, message in self._queues[topic]]

    async def pop_due(self, topic: str) -> Optional[RawMessage]:
        """Remove and return the earliest due message, if any."""
        now = self._clock()
        async with self._lock:
            queue = self._queues[topic]
            due = [item for item in queue if item[1].is_due(now)]
            if not due:
                return None
            item = min(due, key=lambda raw: raw[1].not_before)
            queue.remove(item)
            return item

    async def claim_due(self, topic: str) -> Optional[Tuple[RawMessage, InvocationMessage]]:
        raw = await self.pop_due(topic)
        return (raw, raw[1]) if raw is not None else None

    async def nack(self, raw_message: RawMessage, requeue: bool = True) -> None:
        if requeue:
            async with self._lock:
                self._queues[raw_message[0]].append(raw_message)
