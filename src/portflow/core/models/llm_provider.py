from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from portflow.core.http import PortflowHTTPError
from portflow.core.observability.trace import Trace

from .llm_openai_compat import OpenAICompatClient
from .tool_calling import ToolCall, ToolSpec, parse_tool_calls


class LLMUnavailable(RuntimeError):
    pass


class LLMOutputError(RuntimeError):
    pass


@dataclass
class LLMConfig:
    provider: str
    model: str
    timeout_s: float
    temperature: float
    max_tokens_json: int
    max_tokens_text: int
    max_steps: int


@dataclass
class LLMReply:
    text: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    raw_message: dict[str, Any] = field(default_factory=dict)


def _float_env(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


class PortflowLLM:
    """Chat-completions access for the classifier, the synthesizer and delegated sub-agents.

    With ``PORTFLOW_LLM_PROVIDER=off`` (the default) every call raises
    ``LLMUnavailable`` and callers keep their deterministic behavior.
    """

    def __init__(self, client: httpx.Client | None = None) -> None:
        self.config = LLMConfig(
            provider=os.getenv("PORTFLOW_LLM_PROVIDER", "off").casefold(),
            model=os.getenv("PORTFLOW_LLM_MODEL", "mistral-large-latest"),
            timeout_s=_float_env("PORTFLOW_LLM_TIMEOUT_S", 45.0),
            temperature=_float_env("PORTFLOW_LLM_TEMPERATURE", 0.2),
            max_tokens_json=_int_env("PORTFLOW_LLM_MAX_TOKENS_JSON", 800),
            max_tokens_text=_int_env("PORTFLOW_LLM_MAX_TOKENS_TEXT", 400),
            max_steps=max(1, _int_env("PORTFLOW_LLM_MAX_STEPS", 5)),
        )
        self._compat = OpenAICompatClient(
            url=os.getenv("PORTFLOW_LLM_URL", "https://api.mistral.ai/v1/chat/completions"),
            model=self.config.model,
            api_key=os.getenv("PORTFLOW_LLM_API_KEY") or None,
            timeout_s=self.config.timeout_s,
            client=client,
        )
        self.logger = logging.getLogger("portflow.llm")

    @property
    def enabled(self) -> bool:
        return self.config.provider == "http"

    def complete_text(self, system: str, user: str, max_tokens: int | None = None, trace: Trace | None = None) -> str:
        message = self._call(
            [{"role": "system", "content": system}, {"role": "user", "content": user}],
            max_tokens=max_tokens or self.config.max_tokens_text,
            temperature=self.config.temperature,
            mode="text",
            trace=trace,
        )
        return str(message.get("content") or "").strip()

    def complete_json(self, system: str, user: str, trace: Trace | None = None) -> dict:
        message = self._call(
            [
                {"role": "system", "content": system},
                {"role": "user", "content": f"Return strict JSON only with no markdown fences and no prose.\n{user}"},
            ],
            max_tokens=self.config.max_tokens_json,
            temperature=0.0,
            response_format={"type": "json_object"},
            mode="json",
            trace=trace,
        )
        parsed = self._parse_json(str(message.get("content") or ""))
        if parsed is None:
            raise LLMOutputError("Could not parse JSON response")
        return parsed

    def chat(self, messages: list[dict[str, Any]], tools: list[ToolSpec], trace: Trace | None = None) -> LLMReply:
        message = self._call(
            messages,
            max_tokens=self.config.max_tokens_text,
            temperature=self.config.temperature,
            tools=[tool.to_openai() for tool in tools],
            mode="tools",
            trace=trace,
        )
        return LLMReply(
            text=str(message.get("content") or ""),
            tool_calls=parse_tool_calls(message),
            raw_message=message,
        )

    def _call(
        self,
        messages: list[dict[str, Any]],
        max_tokens: int,
        temperature: float,
        response_format: dict | None = None,
        tools: list[dict[str, Any]] | None = None,
        mode: str = "text",
        trace: Trace | None = None,
    ) -> dict[str, Any]:
        if not self.enabled:
            raise LLMUnavailable("LLM provider is off")

        start = time.perf_counter()
        ok = False
        try:
            message = self._compat.chat_completion(
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
                response_format=response_format,
                tools=tools,
            )
            ok = True
            return message
        except PortflowHTTPError as exc:
            if trace is not None:
                trace.emit("LLMUnavailable", {"mode": mode, "reason": str(exc)})
            raise LLMUnavailable(f"LLM request failed: {exc}") from exc
        finally:
            self.logger.info(
                "llm_call",
                extra={
                    "extra_fields": {
                        "provider": self.config.provider,
                        "model": self.config.model,
                        "mode": mode,
                        "duration_ms": int((time.perf_counter() - start) * 1000),
                        "ok": ok,
                        "message_count": len(messages),
                    }
                },
            )

    def _parse_json(self, raw: str) -> dict | None:
        cleaned = raw.strip()
        if cleaned.startswith("```"):
            cleaned = cleaned.strip("`")
            if cleaned.startswith("json"):
                cleaned = cleaned[4:].strip()
        start = cleaned.find("{")
        end = cleaned.rfind("}")
        if start == -1 or end == -1 or end < start:
            return None
        try:
            parsed = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            return None
        return parsed if isinstance(parsed, dict) else None
