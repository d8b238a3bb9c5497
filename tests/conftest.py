"""Shared fixtures: a controllable clock and a fake third-party HTTP service."""

from __future__ import annotations

import json
from datetime import datetime, timedelta, timezone

import httpx
import pytest

from durastep.persistence import InMemoryWorkflowRepository
from durastep.transports.inmemory import InMemoryTransport

THIRD_PARTY_URL = "https://third-party.test/call/third-party"
THIRD_PARTY_RESULT = "third-party-result"
FAILING_HEADER = "failing-header"
FAILING_HEADER_VALUE = "failing-header-value"
GET_HEADER = "get-header"
GET_HEADER_VALUE = "get-header-value-x"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class ThirdParty:
    """Mimics the endpoint the call scenario talks to and records requests."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method = request.method
        if method == "POST":
            body = request.content.decode()
            header = request.headers.get("post-header", "")
            return httpx.Response(
                201, text=f"called POST '{THIRD_PARTY_RESULT}' '{header}' '{body}'"
            )
        if method == "GET":
            header = request.headers.get("get-header", "")
            return httpx.Response(
                200,
                text=f"called GET '{THIRD_PARTY_RESULT}' '{header}'",
                headers={GET_HEADER: GET_HEADER_VALUE},
            )
        if method == "PATCH":
            return httpx.Response(
                401, text="failing request", headers={FAILING_HEADER: FAILING_HEADER_VALUE}
            )
        if method == "PUT":
            return httpx.Response(300)
        return httpx.Response(405, text=json.dumps({"error": "method not allowed"}))

    def count(self, method: str) -> int:
        return sum(1 for r in self.requests if r.method == method)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def repository() -> InMemoryWorkflowRepository:
    return InMemoryWorkflowRepository()


@pytest.fixture
def transport(clock) -> InMemoryTransport:
    return InMemoryTransport(clock=clock)


@pytest.fixture
def third_party() -> ThirdParty:
    return ThirdParty()


@pytest.fixture
def http_client(third_party):
    return httpx.AsyncClient(transport=httpx.MockTransport(third_party))
