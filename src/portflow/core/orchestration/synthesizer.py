from __future__ import annotations

import logging
from typing import Any, Sequence

from portflow.core.models.llm_provider import LLMOutputError, LLMUnavailable, PortflowLLM
from portflow.core.models.prompts import synthesizer_system_prompt, synthesizer_user_prompt
from portflow.core.observability.trace import Trace
from portflow.core.orchestration import policies
from portflow.core.orchestration.schemas import IntentClassification, SynthesizedOutput, TaskPlan, ToolResult

logger = logging.getLogger("portflow.synthesizer")

STAFF_ROLES = {"OPERATOR", "ADMIN"}

OUT_OF_SCOPE_TEXT = (
    "I can only help with port operations: bookings, slot availability, terminal capacity and peak hours. "
    "Please ask me about one of those."
)

MISSING_LABELS = {
    "booking_id": "the booking number",
    "terminal": "the terminal",
    "date": "the date",
    "time_window": "the time window (for example 08:00-10:00)",
}

TOOL_ACTIONS = {
    "getBooking": "look up booking {booking_id}",
    "listBookings": "list your bookings",
    "createBooking": "create the booking",
    "updateBooking": "update booking {booking_id}",
    "cancelBooking": "cancel booking {booking_id}",
    "approveBooking": "approve booking {booking_id}",
    "rejectBooking": "reject booking {booking_id}",
    "getAllTerminals": "list the terminals",
    "getTerminalById": "get the details of terminal {terminal}",
    "getSlotAvailability": "check slot availability",
    "getCapacityAnalysis": "analyze terminal capacity",
    "getPeakHourAnalysis": "analyze peak hours",
}


def _action(tool_name: str, args: dict[str, Any] | None = None) -> str:
    template = TOOL_ACTIONS.get(tool_name, tool_name)
    try:
        return template.format(**{"booking_id": "", "terminal": "", **(args or {})}).replace("  ", " ").strip()
    except (KeyError, IndexError):
        return template


def _error_reason(error: str | None) -> str:
    if not error:
        return "the request was refused"
    if error.startswith("status_"):
        parts = error.split(":", 2)
        if len(parts) == 3 and parts[2].strip():
            return parts[2].strip()
        return "the request was refused by the booking system"
    return error


def _clock(value: Any) -> str | None:
    text = str(value or "")
    if "T" in text:
        return text.split("T", 1)[1][:5]
    return None


def booking_view(booking: dict[str, Any], role: str) -> dict[str, Any]:
    terminal = booking.get("terminal") if isinstance(booking.get("terminal"), dict) else {}
    start, end = _clock(booking.get("startTime")), _clock(booking.get("endTime"))
    view: dict[str, Any] = {
        "id": booking.get("id"),
        "status": booking.get("status"),
        "date": str(booking.get("date") or booking.get("startTime") or "")[:10] or None,
        "time_window": f"{start}-{end}" if start and end else None,
        "terminal": terminal.get("name") or booking.get("terminalId"),
    }
    if role in STAFF_ROLES:
        carrier = booking.get("carrier") if isinstance(booking.get("carrier"), dict) else {}
        profile = carrier.get("carrierProfile") if isinstance(carrier.get("carrierProfile"), dict) else {}
        view.update(
            {
                "carrier": profile.get("companyName") or booking.get("carrierUserId"),
                "carrier_user_id": booking.get("carrierUserId"),
                "driver_user_id": booking.get("driverUserId"),
                "terminal_id": booking.get("terminalId"),
                "decided_by": booking.get("decidedByOperatorUserId"),
            }
        )
    return {key: value for key, value in view.items() if value is not None}


def _booking_line(view: dict[str, Any]) -> str:
    parts = [f"#{view.get('id')}: {view.get('status', 'UNKNOWN')}"]
    if view.get("date"):
        parts.append(str(view["date"]) + (f" {view['time_window']}" if view.get("time_window") else ""))
    if view.get("terminal"):
        parts.append(f"terminal {view['terminal']}")
    if view.get("carrier"):
        parts.append(f"carrier {view['carrier']}")
    return ", ".join(parts)


def _terminal_line(terminal: dict[str, Any]) -> str:
    return (
        f"{terminal.get('name')}: {terminal.get('availableSlots')}/{terminal.get('maxSlots')} slots free "
        f"({terminal.get('availability', 'UNKNOWN')}, {terminal.get('utilizationPercentage', 0)}% used)"
    )


class OutputSynthesizer:
    def __init__(self, llm: PortflowLLM | None = None, max_listed: int = 10) -> None:
        self.llm = llm
        self.max_listed = max_listed

    def synthesize(
        self,
        results: Sequence[ToolResult],
        classification: IntentClassification,
        role: str,
        history: Sequence[Any] = (),
        plan: TaskPlan | None = None,
        trace: Trace | None = None,
    ) -> SynthesizedOutput:
        role = policies.normalize_role(role)
        if classification.target_capability == policies.FORBIDDEN or (plan is not None and plan.kind == "forbidden"):
            return SynthesizedOutput(text=self.denial_text(classification.category, role))
        if classification.target_capability == policies.CLARIFICATION_NEEDED:
            return SynthesizedOutput(
                text=classification.clarification_question
                or "Could you tell me a bit more about what you need?"
            )
        if plan is not None and plan.kind == "clarification":
            return SynthesizedOutput(text=self.missing_arguments_text(classification.category, plan.missing_arguments))
        if not results:
            if classification.category == policies.OUT_OF_SCOPE:
                return SynthesizedOutput(text=OUT_OF_SCOPE_TEXT)
            return SynthesizedOutput(text=self.help_text(role))

        args_by_id = {subtask.id: subtask.args for subtask in plan.subtasks} if plan is not None else {}
        lines: list[str] = []
        bookings: list[dict[str, Any]] = []
        terminals: list[dict[str, Any]] = []
        warnings: list[str] = []
        for result in results:
            args = args_by_id.get(result.subtask_id, {})
            if result.success:
                lines.extend(self._narrate_success(result, role, bookings, terminals))
            else:
                message = self._narrate_failure(result, args)
                lines.append(message)
                warnings.append(message)

        used_tools: list[str] = []
        for result in results:
            if result.error_kind != "skipped" and result.tool_name not in used_tools:
                used_tools.append(result.tool_name)

        intro = self._llm_intro(classification.category, lines, role, history, trace)
        text = "\n".join([intro, *lines] if intro else lines)
        payload = self._payload(results, role, lines, bookings, terminals, warnings)
        return SynthesizedOutput(text=text, structured_payload=payload, used_tools=used_tools)

    def denial_text(self, category: str, role: str) -> str:
        action = policies.ACTION_LABELS.get(category, "perform this action")
        return (
            f"Sorry, {role or 'your'} accounts are not permitted to {action}. "
            "The request was not carried out. Please contact a terminal operator if you need this done."
        )

    def missing_arguments_text(self, category: str, missing: Sequence[str]) -> str:
        wanted = [MISSING_LABELS.get(item, item) for item in missing]
        joined = wanted[0] if len(wanted) == 1 else ", ".join(wanted[:-1]) + f" and {wanted[-1]}"
        action = policies.ACTION_LABELS.get(category, "do that")
        return f"To {action} I need {joined}. Could you provide it?"

    def help_text(self, role: str) -> str:
        allowed = [
            policies.ACTION_LABELS[category]
            for category in policies.CATEGORIES
            if category in policies.allowed_categories(role)
            and category not in {policies.GENERAL_HELP, policies.OUT_OF_SCOPE}
        ]
        items = "\n".join(f"- {item}" for item in allowed)
        return f"Here is what I can do for you:\n{items}"

    def _narrate_success(
        self,
        result: ToolResult,
        role: str,
        bookings: list[dict[str, Any]],
        terminals: list[dict[str, Any]],
    ) -> list[str]:
        data = result.data if isinstance(result.data, dict) else {}
        tool = result.tool_name

        if tool in {"getBooking", "createBooking", "updateBooking", "cancelBooking", "approveBooking", "rejectBooking"}:
            view = booking_view(data.get("booking") or {}, role)
            bookings.append(view)
            booking_id, status = view.get("id"), view.get("status", "UNKNOWN")
            if tool == "getBooking":
                return [f"Booking {_booking_line(view)}."]
            if tool == "createBooking":
                return [f"Booking {booking_id} was created and is {status}" + (" awaiting operator approval." if status == "PENDING" else ".")]
            verb = {
                "updateBooking": "updated",
                "cancelBooking": "cancelled",
                "approveBooking": "approved",
                "rejectBooking": "rejected",
            }[tool]
            return [f"Booking {booking_id} was {verb} (status {status})."]

        if tool == "listBookings":
            views = [booking_view(item, role) for item in data.get("bookings") or []]
            bookings.extend(views)
            if not views:
                return ["You have no bookings" + (f" with status {data.get('filter')}." if data.get("filter") not in {None, "ALL"} else ".")]
            shown = views[: self.max_listed]
            lines = [f"{len(views)} booking(s) found:"] + [f"- {_booking_line(view)}" for view in shown]
            if len(views) > len(shown):
                lines.append(f"- ... and {len(views) - len(shown)} more")
            return lines

        if tool in {"getAllTerminals", "getSlotAvailability"}:
            items = list(data.get("terminals") or [])
            terminals.extend(items)
            if not items:
                return ["No terminals were found."]
            header = "Terminals:" if tool == "getAllTerminals" else (
                f"Slot availability for {data['date']}:" if data.get("date") else "Slot availability:"
            )
            return [header] + [f"- {_terminal_line(item)}" for item in items]

        if tool == "getTerminalById":
            terminal = data.get("terminal") or {}
            terminals.append(terminal)
            return [f"Terminal {_terminal_line(terminal)}."]

        if tool == "getCapacityAnalysis":
            overall = data.get("overall") or {}
            terminals.extend(data.get("terminals") or [])
            lines = [
                f"Overall utilization is {overall.get('utilizationPercentage', 0)}% across "
                f"{overall.get('totalTerminals', 0)} terminal(s), with {overall.get('totalAvailable', 0)} of "
                f"{overall.get('totalSlots', 0)} slots free."
            ]
            if data.get("saturated"):
                lines.append(f"Near capacity: {', '.join(str(name) for name in data['saturated'])}.")
            return lines

        if tool == "getPeakHourAnalysis":
            if data.get("peakWindow"):
                return [
                    f"Peak demand falls in the {str(data['peakWindow']).lower()} window; "
                    f"the {str(data.get('offPeakWindow')).lower()} window is the quietest."
                ]
            return ["There is no booking history to analyze yet. Typical peaks are 07:00-10:00 and 14:00-17:00."]

        return [f"{_action(tool).capitalize()}: done."]

    def _narrate_failure(self, result: ToolResult, args: dict[str, Any]) -> str:
        action = _action(result.tool_name, args)
        if result.error_kind == "skipped":
            if result.skipped_reason in TOOL_ACTIONS:
                return f"I did not {action} because the earlier step to {_action(result.skipped_reason, args)} did not succeed."
            return f"I did not {action} because an earlier step did not succeed."
        if result.error_kind == "transient":
            return (
                f"I could not {action}: the service was unavailable after {result.attempt} attempt(s). "
                "Please try again later."
            )
        if result.error_kind == "unauthorized":
            return f"I could not {action} because your credentials were rejected. Please sign in again."
        if result.error_kind == "internal":
            return f"I could not {action} because of an internal error."
        return f"I could not {action}: {_error_reason(result.error)}."

    def _payload(
        self,
        results: Sequence[ToolResult],
        role: str,
        lines: list[str],
        bookings: list[dict[str, Any]],
        terminals: list[dict[str, Any]],
        warnings: list[str],
    ) -> dict[str, Any]:
        succeeded = sum(1 for result in results if result.success)
        summary = f"Completed {succeeded} of {len(results)} step(s)."
        if role not in STAFF_ROLES:
            return {
                "type": "carrier",
                "summary": summary,
                "message": lines[0] if lines else "",
                "next_steps": (
                    ["Try the failed steps again later", "Contact support if the issue persists"]
                    if warnings
                    else ["Review the details above"]
                ),
                "bookings": bookings,
                "terminals": terminals,
                "warnings": warnings,
            }

        kpis: list[dict[str, Any]] = [
            {"label": "Steps completed", "value": succeeded},
            {"label": "Steps failed", "value": len(results) - succeeded},
            {"label": "Success rate", "value": f"{round(succeeded / len(results) * 100) if results else 0}%"},
        ]
        if terminals:
            free = sum(int(item.get("availableSlots") or 0) for item in terminals)
            kpis.append({"label": "Free slots", "value": free})
        widgets: list[dict[str, Any]] = [
            {
                "widget_type": "table",
                "title": "Step results",
                "priority": "high",
                "data": [
                    {
                        "step": result.subtask_id,
                        "tool": result.tool_name,
                        "status": "success" if result.success else (result.error_kind or "failed"),
                        "attempts": result.attempt,
                        "latency_ms": result.latency_ms,
                    }
                    for result in results
                ],
            }
        ]
        if bookings:
            widgets.append({"widget_type": "table", "title": "Bookings", "priority": "high", "data": bookings})
        if terminals:
            widgets.append({"widget_type": "chart", "title": "Terminal utilization", "priority": "medium", "data": terminals})
        return {
            "type": "dashboard",
            "title": "Request results",
            "summary": summary,
            "kpis": kpis,
            "widgets": widgets,
            "warnings": [{"severity": "warning", "message": message} for message in warnings],
        }

    def _llm_intro(
        self,
        category: str,
        lines: list[str],
        role: str,
        history: Sequence[Any],
        trace: Trace | None,
    ) -> str | None:
        if self.llm is None or not self.llm.enabled:
            return None
        recent = list(history)[-4:]
        history_block = "\n".join(f"- {turn.speaker}: {turn.text}" for turn in recent)
        try:
            intro = self.llm.complete_text(
                system=synthesizer_system_prompt(role),
                user=synthesizer_user_prompt(category, lines, history_block),
                max_tokens=80,
                trace=trace,
            )
        except (LLMUnavailable, LLMOutputError) as exc:
            logger.info("llm_intro_skipped", extra={"extra_fields": {"error": str(exc)[:200]}})
            return None
        first_line = intro.strip().splitlines()[0] if intro.strip() else ""
        return first_line or None
