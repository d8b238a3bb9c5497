from __future__ import annotations

import random
from dataclasses import dataclass, field
from typing import Callable


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for an outbound call step."""

    max_retries: int = 0
    backoff: Callable[[int], float] = field(default=compute_backoff)

    def __post_init__(self) -> None:
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

    def allows(self, attempt: int) -> bool:
        """Return True if another attempt may follow ``attempt``."""
        return attempt <= self.max_retries

    def delay_for(self, attempt: int) -> float:
        return max(0.0, float(self.backoff(attempt)))
