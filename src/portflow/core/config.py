from __future__ import annotations

import os
from dataclasses import dataclass


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_on(name: str, default: str = "off") -> bool:
    return os.getenv(name, default).strip().casefold() == "on"


@dataclass
class Settings:
    api_base_url: str = "http://localhost:4000"
    min_input_chars: int = 2
    max_input_chars: int = 10000
    strict_injection: bool = False
    confidence_threshold: float = 0.6
    max_subtasks: int = 10
    tool_timeout_s: float = 15.0
    tool_retries: int = 3
    backoff_base_s: float = 0.25
    backoff_max_s: float = 4.0
    executor_workers: int = 4
    session_timeout_s: float = 1800.0
    session_sweep_s: float = 300.0
    history_window: int = 10
    agent_mode: str = "direct"
    redaction_mode: str = "redact"
    debug: bool = False
    jwt_secret: str | None = None

    @classmethod
    def from_env(cls) -> "Settings":
        agent_mode = os.getenv("PORTFLOW_AGENT_MODE", "direct").strip().casefold()
        redaction_mode = os.getenv("PORTFLOW_REDACTION_MODE", "redact").strip().casefold()
        return cls(
            api_base_url=os.getenv("PORTFLOW_API_BASE_URL", "http://localhost:4000").rstrip("/"),
            min_input_chars=max(1, _env_int("PORTFLOW_MIN_INPUT_CHARS", 2)),
            max_input_chars=max(1, _env_int("PORTFLOW_MAX_INPUT_CHARS", 10000)),
            strict_injection=_env_on("PORTFLOW_STRICT_INJECTION"),
            confidence_threshold=min(1.0, max(0.0, _env_float("PORTFLOW_CONFIDENCE_THRESHOLD", 0.6))),
            max_subtasks=max(1, _env_int("PORTFLOW_MAX_SUBTASKS", 10)),
            tool_timeout_s=max(0.1, _env_float("PORTFLOW_TOOL_TIMEOUT_S", 15.0)),
            tool_retries=max(0, _env_int("PORTFLOW_TOOL_RETRIES", 3)),
            backoff_base_s=max(0.0, _env_float("PORTFLOW_BACKOFF_BASE_S", 0.25)),
            backoff_max_s=max(0.0, _env_float("PORTFLOW_BACKOFF_MAX_S", 4.0)),
            executor_workers=max(1, _env_int("PORTFLOW_EXECUTOR_WORKERS", 4)),
            session_timeout_s=max(1.0, _env_float("PORTFLOW_SESSION_TIMEOUT_S", 1800.0)),
            session_sweep_s=max(1.0, _env_float("PORTFLOW_SESSION_SWEEP_S", 300.0)),
            history_window=max(0, _env_int("PORTFLOW_HISTORY_WINDOW", 10)),
            agent_mode=agent_mode if agent_mode in {"direct", "delegated"} else "direct",
            redaction_mode=redaction_mode if redaction_mode in {"redact", "reject"} else "redact",
            debug=_env_on("PORTFLOW_DEBUG"),
            jwt_secret=os.getenv("PORTFLOW_JWT_SECRET") or None,
        )
