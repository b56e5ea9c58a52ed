from __future__ import annotations

import pytest

from portflow.core.backend.client import BackendClient
from portflow.core.http import UnauthorizedHTTPError
from portflow.core.tools.base import ToolContext, ToolInputError
from portflow.core.tools.builtin.bookings import (
    ApproveBookingTool,
    CancelBookingTool,
    CreateBookingTool,
    GetBookingTool,
    ListBookingsTool,
    UpdateBookingTool,
)
from portflow.core.tools.builtin.slots import (
    GetAllTerminalsTool,
    GetCapacityAnalysisTool,
    GetPeakHourAnalysisTool,
    GetSlotAvailabilityTool,
    GetTerminalByIdTool,
    availability_label,
)
from portflow.core.tools.registry import ToolRegistry


def _context(port_backend, role: str = "CARRIER", credential: str = "carrier-token") -> ToolContext:
    return ToolContext(
        role=role,
        credential=credential,
        backend=BackendClient("http://backend.test", credential, client=port_backend.client),
    )


def test_get_booking_sends_bearer_credential(port_backend) -> None:
    result = GetBookingTool().run({"booking_id": 5432}, _context(port_backend))

    assert result["booking"]["status"] == "CONFIRMED"
    assert port_backend.calls == [("GET", "/carrier/bookings")]
    assert port_backend.auth_headers == ["Bearer carrier-token"]


def test_get_booking_unknown_id_is_an_input_error(port_backend) -> None:
    with pytest.raises(ToolInputError, match="not found"):
        GetBookingTool().run({"booking_id": "1"}, _context(port_backend))


def test_booking_paths_follow_role(port_backend) -> None:
    ListBookingsTool().run({}, _context(port_backend, role="OPERATOR"))
    ListBookingsTool().run({}, _context(port_backend, role="DRIVER"))

    assert port_backend.calls == [("GET", "/operator/bookings"), ("GET", "/driver/bookings/mine")]


def test_list_bookings_filters_by_status(port_backend) -> None:
    result = ListBookingsTool().run({"status": "PENDING"}, _context(port_backend))

    assert result["count"] == 1
    assert result["bookings"][0]["id"] == 9999


def test_create_booking_resolves_terminal_name(port_backend) -> None:
    result = CreateBookingTool().run(
        {"terminal": "A", "date": "2026-10-20", "time_window": "08:00-10:00", "driver_id": "42"},
        _context(port_backend),
    )

    booking = result["booking"]
    assert booking["terminalId"] == 1
    assert booking["startTime"] == "2026-10-20T08:00:00.000Z"
    assert booking["endTime"] == "2026-10-20T10:00:00.000Z"
    assert booking["driverUserId"] == "42"
    assert booking["status"] == "PENDING"


def test_update_booking_needs_a_change(port_backend) -> None:
    with pytest.raises(ToolInputError):
        UpdateBookingTool().run({"booking_id": "5432"}, _context(port_backend))


def test_cancel_and_approve(port_backend) -> None:
    cancelled = CancelBookingTool().run({"booking_id": "9999"}, _context(port_backend))
    approved = ApproveBookingTool().run({"booking_id": "5432"}, _context(port_backend, role="OPERATOR"))

    assert cancelled["booking"]["status"] == "CANCELLED"
    assert approved["booking"]["status"] == "CONFIRMED"
    assert ("POST", "/operator/bookings/5432/approve") in port_backend.calls


def test_rejected_credential_raises_unauthorized(port_backend) -> None:
    port_backend.failures[("GET", "/carrier/terminals")] = 401

    with pytest.raises(UnauthorizedHTTPError):
        GetAllTerminalsTool().run({}, _context(port_backend))


def test_terminal_lookup_by_id_and_name(port_backend) -> None:
    by_id = GetTerminalByIdTool().run({"terminal": "2"}, _context(port_backend))
    by_name = GetTerminalByIdTool().run({"terminal": "terminal b"}, _context(port_backend))

    assert by_id["terminal"]["name"] == "Terminal B"
    assert by_name["terminal"]["id"] == 2
    assert by_id["terminal"]["availability"] == "LIMITED"


def test_carrier_terminal_id_is_resolved_from_the_list(port_backend) -> None:
    result = GetSlotAvailabilityTool().run({"terminal": "2", "date": "2026-10-20"}, _context(port_backend))

    assert [item["name"] for item in result["terminals"]] == ["Terminal B"]
    assert port_backend.calls == [("GET", "/carrier/terminals")]
    with pytest.raises(ToolInputError, match="terminal 77 not found"):
        GetTerminalByIdTool().run({"terminal": "77"}, _context(port_backend))


def test_operator_terminal_id_uses_detail_route(port_backend) -> None:
    result = GetTerminalByIdTool().run({"terminal": "1"}, _context(port_backend, role="OPERATOR", credential="op"))

    assert result["terminal"]["name"] == "Terminal A"
    assert port_backend.calls == [("GET", "/operator/terminals/1")]


def test_slot_availability_sorted_by_free_slots(port_backend) -> None:
    result = GetSlotAvailabilityTool().run({"date": "2026-10-20"}, _context(port_backend))

    assert [item["name"] for item in result["terminals"]] == ["Terminal A", "Terminal B"]
    assert result["totalAvailable"] == 22
    assert result["date"] == "2026-10-20"


def test_capacity_analysis(port_backend) -> None:
    result = GetCapacityAnalysisTool().run({}, _context(port_backend))

    assert result["overall"]["totalSlots"] == 90
    assert result["overall"]["totalAvailable"] == 22
    assert result["overall"]["utilizationPercentage"] == 75.56
    assert result["saturated"] == ["Terminal B"]


def test_peak_hour_analysis(port_backend) -> None:
    result = GetPeakHourAnalysisTool().run({}, _context(port_backend))

    assert result["usageByWindow"] == {"MORNING": 1, "AFTERNOON": 1}
    assert result["peakWindow"] in {"MORNING", "AFTERNOON"}


def test_availability_label() -> None:
    assert availability_label({"status": "SUSPENDED", "maxSlots": 10, "availableSlots": 5}) == "SUSPENDED"
    assert availability_label({"maxSlots": 10, "availableSlots": 0}) == "FULL"
    assert availability_label({"maxSlots": 10, "availableSlots": 1}) == "LIMITED"
    assert availability_label({"maxSlots": 10, "availableSlots": 8}) == "AVAILABLE"


def test_registry_specs_describe_inputs() -> None:
    registry = ToolRegistry()
    registry.register(GetBookingTool())

    [spec] = registry.specs()

    assert spec.name == "getBooking"
    assert "booking_id" in spec.parameters["properties"]
    assert spec.to_openai()["function"]["name"] == "getBooking"
