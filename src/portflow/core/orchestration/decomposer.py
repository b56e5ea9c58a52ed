from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Any, Callable, Iterable, Mapping

from portflow.core.observability.trace import Trace
from portflow.core.orchestration import policies
from portflow.core.orchestration.errors import DecompositionError
from portflow.core.orchestration.schemas import Entities, IntentClassification, SanitizedInput, SubTask, TaskPlan

logger = logging.getLogger("portflow.decomposer")

_WEEKDAYS = ["monday", "tuesday", "wednesday", "thursday", "friday", "saturday", "sunday"]


def resolve_date(value: str | None, today: date) -> str | None:
    if not value:
        return None
    lowered = value.strip().lower()
    if lowered == "today":
        return today.isoformat()
    if lowered == "tomorrow":
        return (today + timedelta(days=1)).isoformat()
    match = re.fullmatch(r"next\s+(\w+)", lowered)
    if match and match.group(1) in _WEEKDAYS:
        delta = (_WEEKDAYS.index(match.group(1)) - today.weekday()) % 7 or 7
        return (today + timedelta(days=delta)).isoformat()
    return value


@dataclass
class _Step:
    key: str
    tool_name: str
    args: dict[str, Any]
    description: str
    after: list[str] = field(default_factory=list)
    # defaults to the capability bound to the category
    capability: str | None = None


def _booking_ref(entities: Entities) -> dict[str, Any]:
    return {"booking_id": entities.booking_id}


def _compact(values: Mapping[str, Any]) -> dict[str, Any]:
    return {key: value for key, value in values.items() if value is not None}


class TaskDecomposer:
    """Expands a classification into an acyclic plan of tool calls."""

    def __init__(
        self,
        max_subtasks: int = 10,
        catalogs: Mapping[str, Iterable[str]] | None = None,
        today: Callable[[], date] = date.today,
    ) -> None:
        self.max_subtasks = max_subtasks
        self.catalogs = {name: set(tools) for name, tools in (catalogs or policies.CAPABILITY_TOOLS).items()}
        self.today = today

    def decompose(
        self,
        classification: IntentClassification,
        sanitized: SanitizedInput | None = None,
        role: str = "",
        trace: Trace | None = None,
    ) -> TaskPlan:
        if classification.target_capability == policies.FORBIDDEN:
            return self._short_circuit("forbidden", trace)
        if classification.target_capability == policies.CLARIFICATION_NEEDED:
            return self._short_circuit("clarification", trace)

        categories = [classification.category, *classification.secondary_categories]
        entities = classification.entities
        missing: list[str] = []
        steps: list[tuple[str, _Step]] = []
        for category in categories:
            recipe_steps, recipe_missing = self._recipe(category, entities)
            missing.extend(item for item in recipe_missing if item not in missing)
            steps.extend((category, step) for step in recipe_steps)

        if missing:
            if trace is not None:
                trace.emit("PlanNeedsArguments", {"missing": missing})
            return TaskPlan(kind="clarification", missing_arguments=missing)
        if not steps:
            return self._short_circuit("none", trace)

        subtasks = self._materialize(steps)
        validate_plan(subtasks, self.catalogs, self.max_subtasks)
        plan = TaskPlan(kind="actions", subtasks=topological_order(subtasks))

        logger.info(
            "plan_created",
            extra={
                "extra_fields": {
                    "plan_id": plan.id,
                    "role": role,
                    "categories": categories,
                    "tools": [subtask.tool_name for subtask in plan.subtasks],
                }
            },
        )
        if trace is not None:
            trace.emit(
                "PlanCreated",
                {"plan_id": plan.id, "subtasks": [subtask.model_dump() for subtask in plan.subtasks]},
            )
        return plan

    def _short_circuit(self, kind: str, trace: Trace | None) -> TaskPlan:
        if trace is not None:
            trace.emit("PlanShortCircuit", {"kind": kind})
        return TaskPlan(kind=kind)  # type: ignore[arg-type]

    def _recipe(self, category: str, entities: Entities) -> tuple[list[_Step], list[str]]:
        today = self.today()
        when = resolve_date(entities.date, today)

        if category in {policies.GENERAL_HELP, policies.OUT_OF_SCOPE}:
            return [], []

        if category == policies.BOOKING_STATUS:
            if not entities.booking_id:
                return [], ["booking_id"]
            return [_Step("lookup", "getBooking", _booking_ref(entities), f"Look up booking {entities.booking_id}")], []

        if category == policies.BOOKING_LIST:
            return [_Step("list", "listBookings", _compact({"status": entities.status}), "List bookings")], []

        if category in {policies.BOOKING_CANCEL, policies.BOOKING_APPROVE, policies.BOOKING_REJECT, policies.BOOKING_UPDATE}:
            if not entities.booking_id:
                return [], ["booking_id"]
            lookup = _Step("lookup", "getBooking", _booking_ref(entities), f"Look up booking {entities.booking_id}")
            if category == policies.BOOKING_UPDATE:
                changes = _compact({"date": when, "time_window": entities.time_window, "driver_id": entities.driver_id})
                if not changes:
                    return [], ["new date, time window or driver"]
                action = _Step(
                    "update",
                    "updateBooking",
                    {**_booking_ref(entities), **changes},
                    f"Update booking {entities.booking_id}",
                    after=["lookup"],
                )
            else:
                tool = {
                    policies.BOOKING_CANCEL: "cancelBooking",
                    policies.BOOKING_APPROVE: "approveBooking",
                    policies.BOOKING_REJECT: "rejectBooking",
                }[category]
                verb = tool.removesuffix("Booking").capitalize()
                action = _Step("action", tool, _booking_ref(entities), f"{verb} booking {entities.booking_id}", after=["lookup"])
            return [lookup, action], []

        if category == policies.BOOKING_CREATE:
            required = {"terminal": entities.terminal_id or entities.terminal, "date": when, "time_window": entities.time_window}
            missing = [name for name, value in required.items() if not value]
            if missing:
                return [], missing
            availability = _Step(
                "availability",
                "getSlotAvailability",
                _compact({"terminal": required["terminal"], "date": when}),
                f"Check slot availability at terminal {required['terminal']}",
                capability=policies.SLOT_AVAILABILITY,
            )
            create = _Step(
                "create",
                "createBooking",
                _compact({**required, "driver_id": entities.driver_id}),
                f"Create booking at terminal {required['terminal']} on {when}",
                after=["availability"],
            )
            return [availability, create], []

        terminal = entities.terminal_id or entities.terminal
        if category == policies.SLOT_QUERY:
            return [_Step("slots", "getSlotAvailability", _compact({"terminal": terminal, "date": when}), "Check slot availability")], []
        if category == policies.CAPACITY_QUERY:
            return [_Step("capacity", "getCapacityAnalysis", _compact({"terminal": terminal}), "Analyze terminal capacity")], []
        if category == policies.PEAK_HOURS_QUERY:
            return [_Step("peak", "getPeakHourAnalysis", _compact({"terminal": terminal, "date": when}), "Analyze peak hours")], []
        if category == policies.TERMINAL_QUERY:
            if terminal:
                return [_Step("terminal", "getTerminalById", {"terminal": terminal}, f"Get terminal {terminal}")], []
            return [_Step("terminals", "getAllTerminals", {}, "List all terminals")], []

        raise DecompositionError(f"no recipe for category {category}")

    def _materialize(self, steps: list[tuple[str, _Step]]) -> list[SubTask]:
        subtasks: list[SubTask] = []
        step_ids: dict[tuple[str, str], str] = {}
        shared_reads: dict[tuple[str, str], str] = {}
        for category, step in steps:
            signature = (step.tool_name, repr(sorted(step.args.items())))
            if not step.after and signature in shared_reads:
                # two recipes asking for the same lookup share one sub-task
                step_ids[(category, step.key)] = shared_reads[signature]
                continue
            unknown = [key for key in step.after if (category, key) not in step_ids]
            if unknown:
                raise DecompositionError(f"{category} step {step.key} depends on unknown steps {unknown}")
            subtask_id = f"t{len(subtasks) + 1}"
            subtasks.append(
                SubTask(
                    id=subtask_id,
                    capability=step.capability or policies.capability_for(category),
                    tool_name=step.tool_name,
                    args=dict(step.args),
                    depends_on=[step_ids[(category, key)] for key in step.after],
                    description=step.description,
                )
            )
            step_ids[(category, step.key)] = subtask_id
            if not step.after:
                shared_reads[signature] = subtask_id
        return subtasks


def validate_plan(subtasks: list[SubTask], catalogs: Mapping[str, set[str]], max_subtasks: int) -> None:
    if len(subtasks) > max_subtasks:
        raise DecompositionError(f"plan has {len(subtasks)} sub-tasks, limit is {max_subtasks}")
    ids: set[str] = set()
    for subtask in subtasks:
        if subtask.id in ids:
            raise DecompositionError(f"duplicate sub-task id {subtask.id}")
        ids.add(subtask.id)
        if subtask.tool_name not in catalogs.get(subtask.capability, set()):
            raise DecompositionError(f"tool {subtask.tool_name} is not offered by capability {subtask.capability}")
    for subtask in subtasks:
        unknown = [dep for dep in subtask.depends_on if dep not in ids]
        if unknown:
            raise DecompositionError(f"sub-task {subtask.id} depends on unknown ids {unknown}")
    topological_order(subtasks)


def topological_order(subtasks: list[SubTask]) -> list[SubTask]:
    """Kahn's algorithm, stable with respect to the given order. Raises on cycles."""
    by_id = {subtask.id: subtask for subtask in subtasks}
    pending = {subtask.id: {dep for dep in subtask.depends_on if dep in by_id} for subtask in subtasks}
    ordered: list[SubTask] = []
    while pending:
        ready = [subtask_id for subtask_id in by_id if subtask_id in pending and not pending[subtask_id]]
        if not ready:
            raise DecompositionError(f"dependency cycle among sub-tasks {sorted(pending)}")
        for subtask_id in ready:
            ordered.append(by_id[subtask_id])
            del pending[subtask_id]
        for deps in pending.values():
            deps.difference_update(ready)
    return ordered
