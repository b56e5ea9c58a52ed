from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from pydantic import BaseModel, field_validator

from portflow.core.backend.client import BackendClient


class ToolInputError(ValueError):
    """Bad or unresolvable arguments. Reported as a permanent failure, never retried."""


class ToolInput(BaseModel):
    @field_validator("*", mode="before")
    @classmethod
    def _numbers_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value


@dataclass
class ToolContext:
    role: str
    credential: str
    backend: BackendClient


class Tool(Protocol):
    name: str
    description: str
    side_effect: str
    input_model: type[BaseModel]

    def run(self, args: dict[str, Any], context: ToolContext) -> Any: ...
