from __future__ import annotations

from collections import Counter
from datetime import datetime
from typing import Any

from portflow.core.tools.base import ToolContext, ToolInput
from portflow.core.tools.builtin.common import as_list, bookings_path, list_terminals, resolve_terminal

PEAK_WINDOWS = {
    "morning_peak": {"hours": "07:00-10:00", "expected_utilization": "80-95%"},
    "afternoon_peak": {"hours": "14:00-17:00", "expected_utilization": "60-80%"},
    "off_peak": {"hours": "10:00-14:00, 17:00-20:00", "expected_utilization": "30-60%"},
}


def utilization(terminal: dict[str, Any]) -> float:
    max_slots = int(terminal.get("maxSlots") or 0)
    available = int(terminal.get("availableSlots") or 0)
    if max_slots <= 0:
        return 0.0
    return round((max_slots - available) / max_slots * 100, 2)


def availability_label(terminal: dict[str, Any]) -> str:
    if str(terminal.get("status", "ACTIVE")).upper() == "SUSPENDED":
        return "SUSPENDED"
    if int(terminal.get("availableSlots") or 0) == 0:
        return "FULL"
    if utilization(terminal) >= 80:
        return "LIMITED"
    return "AVAILABLE"


def summarize_terminal(terminal: dict[str, Any]) -> dict[str, Any]:
    return {
        "id": terminal.get("id"),
        "name": terminal.get("name"),
        "status": terminal.get("status"),
        "maxSlots": terminal.get("maxSlots"),
        "availableSlots": terminal.get("availableSlots"),
        "utilizationPercentage": utilization(terminal),
        "availability": availability_label(terminal),
    }


class TerminalFilterInput(ToolInput):
    terminal: str | None = None
    date: str | None = None


class TerminalRefInput(ToolInput):
    terminal: str


class EmptyInput(ToolInput):
    pass


class GetAllTerminalsTool:
    name = "getAllTerminals"
    description = "List every terminal with its slot capacity and utilization."
    side_effect = "read"
    input_model = EmptyInput

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        terminals = [summarize_terminal(terminal) for terminal in list_terminals(context)]
        return {"terminals": terminals, "count": len(terminals)}


class GetTerminalByIdTool:
    name = "getTerminalById"
    description = "Get one terminal's details and current capacity state, by id or name."
    side_effect = "read"
    input_model = TerminalRefInput

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = TerminalRefInput.model_validate(args)
        return {"terminal": summarize_terminal(resolve_terminal(context, payload.terminal))}


class GetSlotAvailabilityTool:
    name = "getSlotAvailability"
    description = "Check available slots, for one terminal or across all terminals, optionally for a date."
    side_effect = "read"
    input_model = TerminalFilterInput

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = TerminalFilterInput.model_validate(args)
        if payload.terminal:
            terminal = summarize_terminal(resolve_terminal(context, payload.terminal))
            return {"date": payload.date, "terminals": [terminal], "totalAvailable": terminal["availableSlots"] or 0}

        terminals = [summarize_terminal(terminal) for terminal in list_terminals(context)]
        terminals.sort(key=lambda item: int(item.get("availableSlots") or 0), reverse=True)
        return {
            "date": payload.date,
            "terminals": terminals,
            "totalAvailable": sum(int(item.get("availableSlots") or 0) for item in terminals),
        }


class GetCapacityAnalysisTool:
    name = "getCapacityAnalysis"
    description = "Analyze terminal capacity and utilization."
    side_effect = "read"
    input_model = TerminalFilterInput

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = TerminalFilterInput.model_validate(args)
        raw = [resolve_terminal(context, payload.terminal)] if payload.terminal else list_terminals(context)
        terminals = [summarize_terminal(terminal) for terminal in raw]
        total_slots = sum(int(item.get("maxSlots") or 0) for item in terminals)
        total_available = sum(int(item.get("availableSlots") or 0) for item in terminals)
        overall = round((total_slots - total_available) / total_slots * 100, 2) if total_slots else 0.0
        return {
            "terminals": terminals,
            "overall": {
                "totalTerminals": len(terminals),
                "activeTerminals": sum(1 for item in terminals if str(item.get("status", "")).upper() == "ACTIVE"),
                "totalSlots": total_slots,
                "totalAvailable": total_available,
                "utilizationPercentage": overall,
            },
            "saturated": [item["name"] for item in terminals if item["availability"] in {"FULL", "LIMITED"}],
        }


def _time_bucket(start_time: str | None) -> str | None:
    if not start_time:
        return None
    try:
        hour = datetime.fromisoformat(start_time.replace("Z", "+00:00")).hour
    except ValueError:
        return None
    if 6 <= hour < 12:
        return "MORNING"
    if 12 <= hour < 18:
        return "AFTERNOON"
    return "EVENING"


class GetPeakHourAnalysisTool:
    name = "getPeakHourAnalysis"
    description = "Analyze peak and off-peak hours from booking history."
    side_effect = "read"
    input_model = TerminalFilterInput

    def run(self, args: dict[str, Any], context: ToolContext) -> dict[str, Any]:
        payload = TerminalFilterInput.model_validate(args)
        terminal_id = None
        if payload.terminal:
            terminal_id = str(resolve_terminal(context, payload.terminal).get("id"))

        bookings = as_list(context.backend.get(bookings_path(context.role)), "bookings")
        usage: Counter[str] = Counter()
        for booking in bookings:
            if terminal_id and str(booking.get("terminalId")) != terminal_id:
                continue
            if payload.date and not str(booking.get("date") or booking.get("startTime") or "").startswith(payload.date):
                continue
            bucket = _time_bucket(booking.get("startTime"))
            if bucket:
                usage[bucket] += 1

        ranked = usage.most_common()
        peak = ranked[0][0] if ranked else None
        off_peak = ranked[-1][0] if ranked else None
        return {
            "terminal": payload.terminal,
            "date": payload.date,
            "usageByWindow": dict(usage),
            "peakWindow": peak,
            "offPeakWindow": off_peak,
            "typicalWindows": PEAK_WINDOWS,
        }


def slot_tools() -> list[Any]:
    return [
        GetAllTerminalsTool(),
        GetTerminalByIdTool(),
        GetSlotAvailabilityTool(),
        GetCapacityAnalysisTool(),
        GetPeakHourAnalysisTool(),
    ]
