"""Redis transport backed by a sorted-set delay queue."""

from __future__ import annotations

import logging
from typing import Any, Optional, Tuple

import redis.asyncio as redis
from pydantic import ValidationError

from ..contracts import InvocationMessage
from ..utils.clock import Clock, utcnow
from .base import BaseTransport

logger = logging.getLogger(__name__)


class RedisTransport(BaseTransport[Tuple[str, str]]):
    """Redis-based transport for distributed delayed delivery.

    Messages live in a sorted set scored by their ``not_before`` epoch.
    Consumers claim a due member with ``ZREM`` so only one of them wins.
    """

    def __init__(
        self,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        clock: Clock = utcnow,
        poll_interval: float = 0.2,
    ) -> None:
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        super().__init__(clock=clock, poll_interval=poll_interval)
        self._redis: Optional[Any] = None

    @staticmethod
    def _queue_name(topic: str) -> str:
        return f"durastep:{topic}"

    async def connect(self) -> None:
        """Connect to Redis."""
        self._redis = redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            decode_responses=True,
        )
        # Test connection
        await self._redis.ping()

    async def disconnect(self) -> None:
        """Disconnect from Redis."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: InvocationMessage) -> None:
        """Add message to the topic's delay queue."""
        if not self._redis:
            await self.connect()

        await self._redis.zadd(
            self._queue_name(topic), {message.to_json(): message.not_before_epoch()}
        )

    async def claim_due(
        self, topic: str
    ) -> Optional[Tuple[Tuple[str, str], InvocationMessage]]:
        """Claim the earliest due member of the topic's delay queue."""
        if not self._redis:
            await self.connect()

        queue_name = self._queue_name(topic)
        now = self._clock().timestamp()
        candidates = await self._redis.zrangebyscore(
            queue_name, "-inf", now, start=0, num=10
        )
        for member in candidates:
            if not await self._redis.zrem(queue_name, member):
                # Another consumer claimed it first
                continue
            try:
                message = InvocationMessage.from_json(member)
            except ValidationError as e:
                logger.error(f"Dropping unparseable message on {queue_name}: {e}")
                continue
            return (topic, member), message
        return None

    async def nack(self, raw_message: Tuple[str, str], requeue: bool = True) -> None:
        if not requeue:
            return
        topic, member = raw_message
        message = InvocationMessage.from_json(member)
        await self._redis.zadd(
            self._queue_name(topic), {member: message.not_before_epoch()}
        )
