from __future__ import annotations

from portflow.core.models.tool_calling import ToolSpec
from portflow.core.tools.base import Tool


class ToolRegistry:
    def __init__(self) -> None:
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if not hasattr(tool, "side_effect"):
            setattr(tool, "side_effect", "read")
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool:
        return self._tools[name]

    def has(self, name: str) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return sorted(self._tools.keys())

    def specs(self) -> list[ToolSpec]:
        return [
            ToolSpec(name=tool.name, description=tool.description, parameters=tool.input_model.model_json_schema())
            for tool in (self._tools[name] for name in self.names())
        ]
