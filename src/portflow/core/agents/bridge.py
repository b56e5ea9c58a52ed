from __future__ import annotations

import logging
from typing import Any, Iterable, Protocol

from portflow.core.agents.subagent import SubAgent
from portflow.core.models.llm_provider import PortflowLLM
from portflow.core.models.prompts import BOOKING_AGENT_PROMPT, SLOTS_AGENT_PROMPT
from portflow.core.observability.trace import Trace
from portflow.core.orchestration import policies
from portflow.core.orchestration.schemas import SubTask
from portflow.core.tools.base import ToolContext, ToolInputError
from portflow.core.tools.builtin.bookings import booking_tools
from portflow.core.tools.builtin.slots import slot_tools
from portflow.core.tools.registry import ToolRegistry

logger = logging.getLogger("portflow.bridge")


class Capability(Protocol):
    name: str

    def tool_names(self) -> list[str]: ...

    def invoke(self, subtask: SubTask, context: ToolContext, trace: Trace | None = None) -> Any: ...


class _RegistryCapability:
    name = ""
    system_prompt = ""

    def __init__(
        self,
        registry: ToolRegistry,
        mode: str = "direct",
        llm: PortflowLLM | None = None,
        max_steps: int = 5,
    ) -> None:
        self.registry = registry
        self.mode = mode
        self.subagent: SubAgent | None = None
        if mode == "delegated" and llm is not None:
            self.subagent = SubAgent(self.name, self.system_prompt, registry, llm, max_steps=max_steps)

    def tool_names(self) -> list[str]:
        return self.registry.names()

    def invoke(self, subtask: SubTask, context: ToolContext, trace: Trace | None = None) -> Any:
        if not self.registry.has(subtask.tool_name):
            raise ToolInputError(f"{self.name} has no tool {subtask.tool_name}")
        if self.subagent is not None and self.subagent.available:
            return self.subagent.run(subtask, context, trace=trace)
        return self.registry.get(subtask.tool_name).run(dict(subtask.args), context)


class BookingCapability(_RegistryCapability):
    name = policies.BOOKING
    system_prompt = BOOKING_AGENT_PROMPT


class SlotAvailabilityCapability(_RegistryCapability):
    name = policies.SLOT_AVAILABILITY
    system_prompt = SLOTS_AGENT_PROMPT


class AgentBridge:
    """Single entry point the executor uses for every capability."""

    def __init__(self, capabilities: Iterable[Capability]) -> None:
        self._capabilities: dict[str, Capability] = {capability.name: capability for capability in capabilities}

    def invoke(self, subtask: SubTask, context: ToolContext, trace: Trace | None = None) -> Any:
        capability = self._capabilities.get(subtask.capability)
        if capability is None:
            raise ToolInputError(f"no capability named {subtask.capability}")
        return capability.invoke(subtask, context, trace=trace)

    def names(self) -> list[str]:
        return sorted(self._capabilities)

    def catalogs(self) -> dict[str, list[str]]:
        return {name: capability.tool_names() for name, capability in self._capabilities.items()}


def _registry(tools: Iterable[Any]) -> ToolRegistry:
    registry = ToolRegistry()
    for tool in tools:
        registry.register(tool)
    return registry


def build_bridge(mode: str = "direct", llm: PortflowLLM | None = None, max_steps: int = 5) -> AgentBridge:
    if mode == "delegated" and (llm is None or not llm.enabled):
        logger.warning("delegated_mode_without_llm", extra={"extra_fields": {"fallback": "direct"}})
    return AgentBridge(
        [
            BookingCapability(_registry(booking_tools()), mode=mode, llm=llm, max_steps=max_steps),
            SlotAvailabilityCapability(_registry(slot_tools()), mode=mode, llm=llm, max_steps=max_steps),
        ]
    )
