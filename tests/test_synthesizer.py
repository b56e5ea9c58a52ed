from __future__ import annotations

from portflow.core.models.llm_provider import LLMUnavailable
from portflow.core.orchestration import policies
from portflow.core.orchestration.schemas import Entities, IntentClassification, SubTask, TaskPlan, ToolResult
from portflow.core.orchestration.synthesizer import OUT_OF_SCOPE_TEXT, OutputSynthesizer, booking_view

BOOKING = {
    "id": 5432,
    "status": "CONFIRMED",
    "terminalId": 1,
    "terminal": {"name": "Terminal A"},
    "carrierUserId": 7,
    "driverUserId": 12,
    "startTime": "2026-10-20T08:00:00.000Z",
    "endTime": "2026-10-20T10:00:00.000Z",
    "date": "2026-10-20T00:00:00.000Z",
}


def _classification(category: str, target: str | None = None, **kwargs) -> IntentClassification:
    return IntentClassification(
        category=category,
        confidence=0.9,
        target_capability=target or policies.capability_for(category),
        entities=Entities(),
        **kwargs,
    )


def _ok(subtask_id: str, tool: str, data: dict) -> ToolResult:
    return ToolResult(subtask_id=subtask_id, tool_name=tool, capability="booking", success=True, data=data, attempt=1)


def test_forbidden_gets_fixed_denial() -> None:
    output = OutputSynthesizer().synthesize(
        [], _classification(policies.BOOKING_APPROVE, target=policies.FORBIDDEN), "CARRIER", plan=TaskPlan(kind="forbidden")
    )

    assert "CARRIER" in output.text
    assert "approve a booking" in output.text
    assert "not carried out" in output.text
    assert output.used_tools == []


def test_clarification_uses_classifier_question() -> None:
    classification = _classification(
        policies.TERMINAL_QUERY,
        target=policies.CLARIFICATION_NEEDED,
        clarification_question="Which terminal do you mean?",
    )

    output = OutputSynthesizer().synthesize([], classification, "CARRIER", plan=TaskPlan(kind="clarification"))

    assert output.text == "Which terminal do you mean?"


def test_missing_arguments_are_named() -> None:
    plan = TaskPlan(kind="clarification", missing_arguments=["date", "time_window"])

    output = OutputSynthesizer().synthesize([], _classification(policies.BOOKING_CREATE), "CARRIER", plan=plan)

    assert "create a booking" in output.text
    assert "the date and the time window" in output.text


def test_help_lists_role_actions() -> None:
    output = OutputSynthesizer().synthesize([], _classification(policies.GENERAL_HELP), "DRIVER", plan=TaskPlan(kind="none"))

    assert "check a booking status" in output.text
    assert "approve a booking" not in output.text
    assert "create a booking" not in output.text


def test_out_of_scope_notice() -> None:
    output = OutputSynthesizer().synthesize([], _classification(policies.OUT_OF_SCOPE), "CARRIER", plan=TaskPlan(kind="none"))

    assert output.text == OUT_OF_SCOPE_TEXT


def test_booking_status_narration_for_carrier() -> None:
    output = OutputSynthesizer().synthesize(
        [_ok("t1", "getBooking", {"booking": BOOKING})], _classification(policies.BOOKING_STATUS), "CARRIER"
    )

    assert "CONFIRMED" in output.text
    assert "5432" in output.text
    assert output.used_tools == ["getBooking"]
    assert output.structured_payload["type"] == "carrier"
    [view] = output.structured_payload["bookings"]
    assert view == {
        "id": 5432,
        "status": "CONFIRMED",
        "date": "2026-10-20",
        "time_window": "08:00-10:00",
        "terminal": "Terminal A",
    }


def test_operator_view_includes_internal_identifiers() -> None:
    view = booking_view(BOOKING, "OPERATOR")

    assert view["carrier_user_id"] == 7
    assert view["driver_user_id"] == 12
    assert view["terminal_id"] == 1


def test_operator_gets_dashboard_payload() -> None:
    output = OutputSynthesizer().synthesize(
        [_ok("t1", "getBooking", {"booking": BOOKING})], _classification(policies.BOOKING_STATUS), "OPERATOR"
    )

    payload = output.structured_payload
    assert payload["type"] == "dashboard"
    assert {kpi["label"] for kpi in payload["kpis"]} >= {"Steps completed", "Steps failed"}
    assert payload["widgets"][0]["data"][0]["attempts"] == 1


def test_every_result_is_accounted_for() -> None:
    plan = TaskPlan(
        subtasks=[
            SubTask(id="t1", capability="slot_availability", tool_name="getAllTerminals"),
            SubTask(id="t2", capability="booking", tool_name="getBooking", args={"booking_id": "9999"}),
            SubTask(id="t3", capability="booking", tool_name="cancelBooking", args={"booking_id": "9999"}, depends_on=["t2"]),
            SubTask(id="t4", capability="booking", tool_name="listBookings"),
        ]
    )
    results = [
        _ok("t1", "getAllTerminals", {"terminals": [{"name": "Terminal A", "availableSlots": 3, "maxSlots": 10}]}),
        ToolResult(
            subtask_id="t2",
            tool_name="getBooking",
            capability="booking",
            success=False,
            error="status_503:GET /carrier/bookings",
            error_kind="transient",
            attempt=4,
        ),
        ToolResult(
            subtask_id="t3",
            tool_name="cancelBooking",
            capability="booking",
            success=False,
            error_kind="skipped",
            skipped_reason="getBooking",
        ),
        ToolResult(
            subtask_id="t4",
            tool_name="listBookings",
            capability="booking",
            success=False,
            error="status_400:GET /carrier/bookings:Invalid status filter",
            error_kind="permanent",
            attempt=1,
        ),
    ]

    output = OutputSynthesizer().synthesize(
        results, _classification(policies.TERMINAL_QUERY), "CARRIER", plan=plan
    )

    assert "Terminal A" in output.text
    assert "look up booking 9999" in output.text
    assert "after 4 attempt(s)" in output.text
    assert "did not cancel booking 9999" in output.text
    assert "Invalid status filter" in output.text
    assert output.used_tools == ["getAllTerminals", "getBooking", "listBookings"]
    assert len(output.structured_payload["warnings"]) == 3


def test_unauthorized_result_asks_to_sign_in() -> None:
    result = ToolResult(
        subtask_id="t1",
        tool_name="listBookings",
        capability="booking",
        success=False,
        error="unauthorized:GET /carrier/bookings",
        error_kind="unauthorized",
        attempt=1,
    )

    output = OutputSynthesizer().synthesize([result], _classification(policies.BOOKING_LIST), "CARRIER")

    assert "sign in again" in output.text


class FailingLLM:
    enabled = True

    def complete_text(self, **kwargs) -> str:
        raise LLMUnavailable("down")


class GreetingLLM:
    enabled = True

    def complete_text(self, **kwargs) -> str:
        return "Here is your booking.\nignored second line"


def test_language_model_intro_is_optional() -> None:
    results = [_ok("t1", "getBooking", {"booking": BOOKING})]
    classification = _classification(policies.BOOKING_STATUS)

    plain = OutputSynthesizer().synthesize(results, classification, "CARRIER")
    fallback = OutputSynthesizer(llm=FailingLLM()).synthesize(results, classification, "CARRIER")
    enriched = OutputSynthesizer(llm=GreetingLLM()).synthesize(results, classification, "CARRIER")

    assert fallback.text == plain.text
    assert enriched.text.startswith("Here is your booking.\n")
    assert "ignored second line" not in enriched.text
