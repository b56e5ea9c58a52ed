from __future__ import annotations

import json
import re
from datetime import date
from typing import Any

import httpx
import pytest

from portflow.apps.api import deps
from portflow.core.config import Settings
from portflow.core.orchestration.orchestrator import Orchestrator, build_orchestrator
from portflow.core.sessions.store import SessionStore

TODAY = date(2026, 10, 19)


@pytest.fixture(autouse=True)
def portflow_test_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("PORTFLOW_TEST_MODE", "1")
    monkeypatch.setenv("PORTFLOW_LLM_PROVIDER", "off")
    monkeypatch.delenv("PORTFLOW_AGENT_MODE", raising=False)
    monkeypatch.delenv("PORTFLOW_REDACTION_MODE", raising=False)
    monkeypatch.delenv("PORTFLOW_DEBUG", raising=False)
    monkeypatch.delenv("PORTFLOW_JWT_SECRET", raising=False)
    deps.get_settings.cache_clear()
    deps.get_orchestrator.cache_clear()
    deps.get_scheduler_service.cache_clear()


class PortBackend:
    """In-memory stand-in for the port REST API, served through httpx.MockTransport."""

    def __init__(self) -> None:
        self.terminals: list[dict[str, Any]] = [
            {"id": 1, "name": "Terminal A", "status": "ACTIVE", "maxSlots": 50, "availableSlots": 20},
            {"id": 2, "name": "Terminal B", "status": "ACTIVE", "maxSlots": 40, "availableSlots": 2},
        ]
        self.bookings: list[dict[str, Any]] = [
            {
                "id": 5432,
                "status": "CONFIRMED",
                "terminalId": 1,
                "terminal": {"name": "Terminal A"},
                "carrierUserId": 7,
                "date": "2026-10-20T00:00:00.000Z",
                "startTime": "2026-10-20T08:00:00.000Z",
                "endTime": "2026-10-20T10:00:00.000Z",
                "decidedByOperatorUserId": 3,
            },
            {
                "id": 9999,
                "status": "PENDING",
                "terminalId": 2,
                "terminal": {"name": "Terminal B"},
                "carrierUserId": 7,
                "date": "2026-10-21T00:00:00.000Z",
                "startTime": "2026-10-21T14:00:00.000Z",
                "endTime": "2026-10-21T16:00:00.000Z",
            },
        ]
        # (METHOD, path) -> status code returned on every call
        self.failures: dict[tuple[str, str], int] = {}
        self.calls: list[tuple[str, str]] = []
        self.auth_headers: list[str | None] = []

    @property
    def client(self) -> httpx.Client:
        return httpx.Client(transport=httpx.MockTransport(self.handler))

    def calls_to(self, method: str, path: str) -> int:
        return sum(1 for call in self.calls if call == (method, path))

    def handler(self, request: httpx.Request) -> httpx.Response:
        method, path = request.method, request.url.path
        self.calls.append((method, path))
        self.auth_headers.append(request.headers.get("Authorization"))

        status = self.failures.get((method, path))
        if status is not None:
            return httpx.Response(status, json={"message": f"backend says {status}"})

        if method == "GET" and re.fullmatch(r"/(admin|operator|carrier)/terminals", path):
            return httpx.Response(200, json=self.terminals)
        match = re.fullmatch(r"/(admin|operator)/terminals/(\d+)", path)
        if method == "GET" and match:
            found = [item for item in self.terminals if str(item["id"]) == match.group(2)]
            if not found:
                return httpx.Response(404, json={"message": "Terminal not found"})
            return httpx.Response(200, json=found[0])
        if method == "GET" and path in {"/carrier/bookings", "/operator/bookings", "/driver/bookings/mine"}:
            return httpx.Response(200, json=self.bookings)
        if method == "POST" and path == "/carrier/bookings":
            body = json.loads(request.content)
            booking = {"id": 10000 + len(self.bookings), "status": "PENDING", **body}
            self.bookings.append(booking)
            return httpx.Response(201, json=booking)
        match = re.fullmatch(r"/carrier/bookings/(\d+)", path)
        if match and method in {"PUT", "DELETE"}:
            booking = self._booking(match.group(1))
            if booking is None:
                return httpx.Response(404, json={"message": "Booking not found"})
            if method == "DELETE":
                booking["status"] = "CANCELLED"
                return httpx.Response(200, json={"message": "Booking cancelled"})
            booking.update(json.loads(request.content))
            return httpx.Response(200, json=booking)
        match = re.fullmatch(r"/operator/bookings/(\d+)/(approve|reject)", path)
        if match and method == "POST":
            booking = self._booking(match.group(1))
            if booking is None:
                return httpx.Response(404, json={"message": "Booking not found"})
            booking["status"] = "CONFIRMED" if match.group(2) == "approve" else "REJECTED"
            return httpx.Response(200, json=booking)
        return httpx.Response(404, json={"message": f"no route {method} {path}"})

    def _booking(self, booking_id: str) -> dict[str, Any] | None:
        return next((item for item in self.bookings if str(item["id"]) == booking_id), None)


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def port_backend() -> PortBackend:
    return PortBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def orchestrator(port_backend: PortBackend, clock: FakeClock) -> Orchestrator:
    return build_orchestrator(
        Settings(api_base_url="http://backend.test", session_timeout_s=1800.0),
        http_client=port_backend.client,
        store=SessionStore(timeout_s=1800.0, clock=clock, wall_clock=clock),
        today=lambda: TODAY,
        sleep=lambda _: None,
    )
