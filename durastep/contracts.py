"""Message and request contracts exchanged by durastep components."""

from __future__ import annotations

import json
import uuid
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .constants import RESUME_HEADER, RUN_ID_HEADER
from .utils.clock import utcnow


class CallRequest(BaseModel):
    """Outbound HTTP request issued by a call step."""

    url: str
    method: str = "GET"
    body: Any = None
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: Optional[float] = None

    def encoded_body(self) -> Optional[str]:
        """Bodies are sent JSON-encoded; ``None`` sends no body."""
        if self.body is None:
            return None
        return json.dumps(self.body)

    def fingerprint_inputs(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "method": self.method.upper(),
            "body": self.encoded_body(),
            "headers": dict(sorted(self.headers.items())),
        }


class CallResult(BaseModel):
    """Terminal outcome of a call step."""

    status: int
    headers: Dict[str, List[str]] = Field(default_factory=dict)
    body: str = ""

    def header(self, name: str) -> Optional[str]:
        """First value of header ``name`` (case-insensitive)."""
        values = self.headers.get(name.lower())
        return values[0] if values else None


class InvocationMessage(BaseModel):
    """Envelope published on the broker to (re)deliver a run to the gateway."""

    message_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    run_id: str
    url: str
    body: str = ""
    headers: Dict[str, str] = Field(default_factory=dict)
    resume: bool = True
    reason: Optional[str] = None
    attempt: int = 0
    timestamp: datetime = Field(default_factory=utcnow)
    not_before: datetime = Field(default_factory=utcnow)

    @classmethod
    def delayed(cls, delay: float, now: Optional[datetime] = None, **kwargs: Any) -> "InvocationMessage":
        now = now or utcnow()
        return cls(timestamp=now, not_before=now + timedelta(seconds=max(0.0, delay)), **kwargs)

    def is_due(self, now: datetime) -> bool:
        return self.not_before <= now

    def delivery_headers(self) -> Dict[str, str]:
        headers = dict(self.headers)
        headers[RUN_ID_HEADER] = self.run_id
        if self.resume:
            headers[RESUME_HEADER] = "true"
        return headers

    def not_before_epoch(self) -> float:
        return self.not_before.astimezone(timezone.utc).timestamp()

    def to_json(self) -> str:
        """Serialize message to JSON."""
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "InvocationMessage":
        """Deserialize message from JSON."""
        return cls.model_validate_json(data)


class GatewayRequest(BaseModel):
    """Framework-agnostic view of an incoming trigger."""

    method: str = "POST"
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    body: str = ""

    def header(self, name: str) -> Optional[str]:
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None


class GatewayResponse(BaseModel):
    """Response returned to the trigger caller; ``body`` is JSON text."""

    status_code: int
    body: str
    headers: Dict[str, str] = Field(
        default_factory=lambda: {"content-type": "application/json"}
    )

    @classmethod
    def from_payload(cls, status_code: int, payload: Dict[str, Any]) -> "GatewayResponse":
        return cls(status_code=status_code, body=json.dumps(payload))

    def data(self) -> Dict[str, Any]:
        return json.loads(self.body)
