"""Continuation transports and the factory that picks one from config."""

from __future__ import annotations

import os
from typing import Optional

from ..config import DurastepConfig, load_config
from ..utils.clock import Clock, utcnow
from .base import BaseTransport
from .inmemory import InMemoryTransport


def get_transport(
    backend: Optional[str] = None,
    config: Optional[DurastepConfig] = None,
    clock: Clock = utcnow,
) -> BaseTransport:
    """Build the transport named by ``backend``, ``DURASTEP_TRANSPORT`` or config.

    The poll interval comes from ``transport.poll_interval``; ``clock``
    decides when a delayed continuation is due.
    """
    config = config or load_config()
    settings = config.transport
    name = (backend or os.getenv("DURASTEP_TRANSPORT") or settings.backend).lower()

    if name == "inmemory":
        return InMemoryTransport(clock=clock, poll_interval=settings.poll_interval)
    if name == "redis":
        from .redis import RedisTransport

        return RedisTransport(
            host=settings.redis.host,
            port=settings.redis.port,
            db=settings.redis.db,
            password=settings.redis.password,
            clock=clock,
            poll_interval=settings.poll_interval,
        )
    raise ValueError(f"Unsupported transport backend: {name}")


__all__ = ["BaseTransport", "InMemoryTransport", "get_transport"]
