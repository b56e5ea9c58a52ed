from __future__ import annotations

import json
import logging
from typing import Any

from portflow.core.models.llm_provider import PortflowLLM
from portflow.core.observability.trace import Trace
from portflow.core.orchestration.schemas import SubTask
from portflow.core.tools.base import ToolContext, ToolInputError
from portflow.core.tools.registry import ToolRegistry

logger = logging.getLogger("portflow.subagent")


def task_message(subtask: SubTask) -> str:
    parts = [subtask.description or subtask.tool_name]
    parts.extend(f"{key}: {value}" for key, value in subtask.args.items())
    parts.append(f"Use the {subtask.tool_name} tool.")
    return ". ".join(parts)


class SubAgent:
    """Tool-calling loop over one capability's catalog.

    The planned tool always runs with the planned arguments. Other read-only
    tools from the same catalog may be called along the way; write tools other
    than the planned one are refused.
    """

    def __init__(self, name: str, system_prompt: str, registry: ToolRegistry, llm: PortflowLLM, max_steps: int = 5) -> None:
        self.name = name
        self.system_prompt = system_prompt
        self.registry = registry
        self.llm = llm
        self.max_steps = max(1, max_steps)

    @property
    def available(self) -> bool:
        return self.llm.enabled

    def run(self, subtask: SubTask, context: ToolContext, trace: Trace | None = None) -> Any:
        messages: list[dict[str, Any]] = [
            {"role": "system", "content": f"{self.system_prompt}\nThe caller's role is {context.role}."},
            {"role": "user", "content": task_message(subtask)},
        ]
        specs = self.registry.specs()

        for step in range(self.max_steps):
            reply = self.llm.chat(messages, specs, trace=trace)
            if not reply.tool_calls:
                break
            messages.append(
                {
                    "role": "assistant",
                    "content": reply.text,
                    "tool_calls": reply.raw_message.get("tool_calls", []),
                }
            )
            planned_result: Any = None
            planned_called = False
            for call in reply.tool_calls:
                output = self._dispatch(call.name, call.arguments, subtask, context)
                if call.name == subtask.tool_name:
                    planned_result = output
                    planned_called = True
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "name": call.name,
                        "content": json.dumps(output, default=str),
                    }
                )
            logger.info(
                "subagent_step",
                extra={
                    "extra_fields": {
                        "agent": self.name,
                        "step": step + 1,
                        "tools": [call.name for call in reply.tool_calls],
                    }
                },
            )
            if planned_called:
                return planned_result

        raise ToolInputError(f"{self.name} agent did not call {subtask.tool_name} within {self.max_steps} steps")

    def _dispatch(self, name: str, arguments: dict[str, Any], subtask: SubTask, context: ToolContext) -> Any:
        if not self.registry.has(name):
            return {"error": f"unknown tool {name}"}
        tool = self.registry.get(name)
        if name == subtask.tool_name:
            return tool.run({**arguments, **subtask.args}, context)
        if getattr(tool, "side_effect", "read") != "read":
            return {"error": f"{name} is not part of this task"}
        return tool.run(arguments, context)
