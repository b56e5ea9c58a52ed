from __future__ import annotations

from typing import Any

from portflow.core.tools.base import ToolContext, ToolInput, ToolInputError
from portflow.core.tools.builtin.common import as_list, bookings_path, resolve_terminal


def _window(time_window: str) -> tuple[str, str]:
    start, _, end = time_window.partition("-")
    if not start or not end:
        raise ToolInputError(f"invalid time window {time_window!r}")
    return start.strip(), end.strip()


def _timestamp(day: str, clock: str) -> str:
    return f"{day}T{clock}:00.000Z"


class BookingRefInput(ToolInput):
    booking_id: str


class ListBookingsInput(ToolInput):
    status: str | None = None


class CreateBookingInput(ToolInput):
    terminal: str
    date: str
    time_window: str
    driver_id: str | None = None


class UpdateBookingInput(ToolInput):
    booking_id: str
    date: str | None = None
    time_window: str | None = None
    driver_id: str | None = None


class GetBookingTool:
    name = "getBooking"
    description = "Retrieve one booking and its current status."
    side_effect = "read"
    input_model = BookingRefInput

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = BookingRefInput.model_validate(args)
        for booking in as_list(context.backend.get(bookings_path(context.role)), "bookings"):
            if str(booking.get("id")) == payload.booking_id:
                return {"booking": booking}
        raise ToolInputError(f"booking {payload.booking_id} not found")


class ListBookingsTool:
    name = "listBookings"
    description = "List the caller's bookings, optionally filtered by status."
    side_effect = "read"
    input_model = ListBookingsInput

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = ListBookingsInput.model_validate(args)
        params = {"status": payload.status} if payload.status and context.role != "DRIVER" else None
        bookings = as_list(context.backend.get(bookings_path(context.role), params=params), "bookings")
        if payload.status:
            bookings = [item for item in bookings if str(item.get("status", "")).upper() == payload.status]
        return {"bookings": bookings, "count": len(bookings), "filter": payload.status or "ALL"}


class CreateBookingTool:
    name = "createBooking"
    description = "Create a booking at a terminal for a date and time window."
    side_effect = "write"
    input_model = CreateBookingInput

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = CreateBookingInput.model_validate(args)
        start, end = _window(payload.time_window)
        terminal = resolve_terminal(context, payload.terminal)
        body: dict[str, Any] = {
            "terminalId": terminal.get("id"),
            "date": _timestamp(payload.date, "00:00"),
            "startTime": _timestamp(payload.date, start),
            "endTime": _timestamp(payload.date, end),
        }
        if payload.driver_id:
            body["driverUserId"] = payload.driver_id
        created = context.backend.post("/carrier/bookings", body)
        return {"booking": created if isinstance(created, dict) else body}


class UpdateBookingTool:
    name = "updateBooking"
    description = "Change the date, time window or driver of an existing booking."
    side_effect = "write"
    input_model = UpdateBookingInput

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = UpdateBookingInput.model_validate(args)
        body: dict[str, Any] = {}
        if payload.date:
            body["date"] = _timestamp(payload.date, "00:00")
        if payload.time_window:
            start, end = _window(payload.time_window)
            if not payload.date:
                raise ToolInputError("a new time window needs a date")
            body["startTime"] = _timestamp(payload.date, start)
            body["endTime"] = _timestamp(payload.date, end)
        if payload.driver_id:
            body["driverUserId"] = payload.driver_id
        if not body:
            raise ToolInputError("nothing to update")
        updated = context.backend.put(f"/carrier/bookings/{payload.booking_id}", body)
        return {"booking": updated if isinstance(updated, dict) else {"id": payload.booking_id, **body}}


class CancelBookingTool:
    name = "cancelBooking"
    description = "Cancel an existing booking."
    side_effect = "write"
    input_model = BookingRefInput

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = BookingRefInput.model_validate(args)
        context.backend.delete(f"/carrier/bookings/{payload.booking_id}")
        return {"booking": {"id": payload.booking_id, "status": "CANCELLED"}}


class _DecisionTool:
    name = ""
    description = ""
    side_effect = "write"
    input_model = BookingRefInput
    decision = ""
    resulting_status = ""

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = BookingRefInput.model_validate(args)
        result = context.backend.post(f"/operator/bookings/{payload.booking_id}/{self.decision}")
        booking = result if isinstance(result, dict) and result.get("id") else {"id": payload.booking_id}
        booking.setdefault("status", self.resulting_status)
        return {"booking": booking}


class ApproveBookingTool(_DecisionTool):
    name = "approveBooking"
    description = "Approve a pending booking (operators and admins)."
    decision = "approve"
    resulting_status = "CONFIRMED"


class RejectBookingTool(_DecisionTool):
    name = "rejectBooking"
    description = "Reject a pending booking (operators and admins)."
    decision = "reject"
    resulting_status = "REJECTED"


def booking_tools() -> list[Any]:
    return [
        GetBookingTool(),
        ListBookingsTool(),
        CreateBookingTool(),
        UpdateBookingTool(),
        CancelBookingTool(),
        ApproveBookingTool(),
        RejectBookingTool(),
    ]
