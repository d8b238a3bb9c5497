"""Delay-queue interface the gateway publishes continuations to."""

from __future__ import annotations

import abc
import asyncio
from typing import AsyncIterator, Generic, Optional, Tuple, TypeVar

from ..contracts import InvocationMessage
from ..utils.clock import Clock, utcnow

RawMessageT = TypeVar("RawMessageT")


class BaseTransport(Generic[RawMessageT], metaclass=abc.ABCMeta):
    """Holds each continuation back until its ``not_before`` time.

    Delivery is at-least-once. ``subscribe`` polls every ``poll_interval``
    seconds while nothing is due; ``clock`` decides what is due.
    """

    def __init__(self, clock: Clock = utcnow, poll_interval: float = 0.2) -> None:
        if poll_interval <= 0:
            raise ValueError("poll_interval must be > 0")
        self._clock = clock
        self.poll_interval = poll_interval

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abc.abstractmethod
    async def publish(self, topic: str, message: InvocationMessage) -> None:
        """Queue ``message`` on ``topic`` for delivery at ``not_before``."""
        raise NotImplementedError

    @abc.abstractmethod
    async def claim_due(self, topic: str) -> Optional[Tuple[RawMessageT, InvocationMessage]]:
        """Take one due message off ``topic`` so no other consumer gets it."""
        raise NotImplementedError

    async def subscribe(
        self, topic: str, lifespan: Optional[float] = None
    ) -> AsyncIterator[Tuple[RawMessageT, InvocationMessage]]:
        """Yield raw message and ``InvocationMessage`` pairs as they fall due.

        Args:
            topic: The topic to consume
            lifespan: Seconds to keep consuming. If None, runs indefinitely.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + lifespan if lifespan is not None else None

        while deadline is None or loop.time() < deadline:
            claimed = await self.claim_due(topic)
            if claimed is None:
                await asyncio.sleep(self.poll_interval)
                continue
            yield claimed

    async def ack(self, raw_message: RawMessageT) -> None:
        """Messages are removed when claimed, so acking is a no-op by default."""

    @abc.abstractmethod
    async def nack(self, raw_message: RawMessageT, requeue: bool = True) -> None:
        """Return a claimed message to its queue when ``requeue`` is set."""
        raise NotImplementedError
