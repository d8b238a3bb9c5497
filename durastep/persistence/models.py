"""Data models for persisted workflow state."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from ..utils.clock import utcnow


class RunStatus(str, Enum):
    PENDING = "pending"
    SUSPENDED = "suspended"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED)


class StepKind(str, Enum):
    GENERIC = "generic"
    CALL = "call"
    SLEEP = "sleep"


class StepRecord(BaseModel):
    """Immutable ledger entry for one resolved step."""

    model_config = ConfigDict(frozen=True)

    run_id: str
    index: int = Field(ge=0)
    kind: StepKind
    name: str
    input_fingerprint: str
    result_body: Optional[str] = None
    result_status: Optional[int] = None
    result_headers: dict[str, list[str]] = Field(default_factory=dict)
    error: Optional[str] = None
    wake_at: Optional[datetime] = None
    completed_at: datetime = Field(default_factory=utcnow)

    def same_content(self, other: "StepRecord") -> bool:
        """Compare everything except the completion timestamp."""
        return self.model_dump(exclude={"completed_at"}) == other.model_dump(
            exclude={"completed_at"}
        )


class CallAttempt(BaseModel):
    """One attempt of an outbound call step."""

    run_id: str
    step_index: int
    attempt: int = Field(ge=1)
    status: Optional[int] = None
    headers: dict[str, list[str]] = Field(default_factory=dict)
    body: Optional[str] = None
    error: Optional[str] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    next_retry_at: Optional[datetime] = None

    @property
    def has_response(self) -> bool:
        return self.status is not None


class TimerEntry(BaseModel):
    """Durable wake-up time for a sleep step."""

    run_id: str
    step_index: int
    wake_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    fired_at: Optional[datetime] = None


class WorkflowRun(BaseModel):
    """Persisted workflow run data."""

    run_id: str
    status: RunStatus = RunStatus.PENDING
    url: Optional[str] = None
    payload: Optional[str] = None
    headers: dict[str, str] = Field(default_factory=dict)
    result: Optional[str] = None
    error: Optional[str] = None
    failed_step: Optional[int] = None
    attempt: int = 0
    next_delivery_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    steps: list[StepRecord] = Field(default_factory=list)
