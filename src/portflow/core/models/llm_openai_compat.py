from __future__ import annotations

from typing import Any

import httpx

from portflow.core.http import send_json


class OpenAICompatClient:
    def __init__(
        self,
        url: str,
        model: str,
        api_key: str | None = None,
        timeout_s: float = 45.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.url = url
        self.model = model
        self.api_key = api_key
        self.timeout_s = timeout_s
        self.client = client

    def chat_completion(
        self,
        messages: list[dict[str, Any]],
        temperature: float,
        max_tokens: int,
        response_format: dict | None = None,
        tools: list[dict[str, Any]] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, object] = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if response_format is not None:
            payload["response_format"] = response_format
        if tools:
            payload["tools"] = tools
            payload["tool_choice"] = "auto"

        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        data = send_json("POST", self.url, headers=headers, json=payload, timeout_s=self.timeout_s, client=self.client)
        choices = (data or {}).get("choices") or []
        if not choices:
            return {"role": "assistant", "content": ""}
        message = choices[0].get("message") or {}
        return message if isinstance(message, dict) else {"role": "assistant", "content": ""}
