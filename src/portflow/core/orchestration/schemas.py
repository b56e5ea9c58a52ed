from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


class SanitizedInput(BaseModel):
    model_config = ConfigDict(frozen=True)

    original_text: str
    sanitized_text: str
    detected_language: str = "en"
    injection_detected: bool = False
    injection_families: list[str] = Field(default_factory=list)
    removed_patterns: list[str] = Field(default_factory=list)
    validation_errors: list[str] = Field(default_factory=list)
    session_meta: dict[str, Any] = Field(default_factory=dict)


class Entities(BaseModel):
    booking_id: str | None = None
    terminal: str | None = None
    terminal_id: str | None = None
    date: str | None = None
    time_window: str | None = None
    driver_id: str | None = None
    status: str | None = None

    def merged_with(self, fallback: "Entities") -> "Entities":
        own = self.model_dump()
        for key, value in fallback.model_dump().items():
            if own.get(key) is None and value is not None:
                own[key] = value
        return Entities(**own)


class IntentClassification(BaseModel):
    category: str
    confidence: float
    target_capability: str
    secondary_categories: list[str] = Field(default_factory=list)
    entities: Entities = Field(default_factory=Entities)
    clarification_question: str | None = None
    reasoning: str = ""
    classifier_version: str = ""


class SubTask(BaseModel):
    id: str
    capability: str
    tool_name: str
    args: dict[str, Any] = Field(default_factory=dict)
    depends_on: list[str] = Field(default_factory=list)
    description: str = ""


class TaskPlan(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid4()))
    kind: Literal["actions", "none", "forbidden", "clarification"] = "actions"
    subtasks: list[SubTask] = Field(default_factory=list)
    missing_arguments: list[str] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.subtasks


ErrorKind = Literal["transient", "permanent", "unauthorized", "skipped", "internal"]


class ToolResult(BaseModel):
    subtask_id: str
    tool_name: str
    capability: str
    success: bool
    data: Any = None
    error: str | None = None
    error_kind: ErrorKind | None = None
    latency_ms: int = 0
    attempt: int = 0
    skipped_reason: str | None = None

    @property
    def skipped(self) -> bool:
        return self.error_kind == "skipped"


class SynthesizedOutput(BaseModel):
    text: str
    structured_payload: dict[str, Any] | None = None
    used_tools: list[str] = Field(default_factory=list)


class Redaction(BaseModel):
    rule: str
    category: str
    location: str
    count: int = 1


class ValidationVerdict(BaseModel):
    approved: bool
    redactions: list[Redaction] = Field(default_factory=list)
    reason: str | None = None
    text: str
    structured_payload: dict[str, Any] | None = None


@dataclass
class ChatResult:
    text: str
    session_id: str
    used_tools: list[str] = field(default_factory=list)
    status: Literal["ok", "rejected", "error"] = "ok"
    trace_events: list[dict[str, Any]] = field(default_factory=list)
