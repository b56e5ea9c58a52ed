from __future__ import annotations

import re
from typing import Any

MASK = "***"

_SECRET_KEY_RE = re.compile(r"(TOKEN|SECRET|PASSWORD|PASSWD|CREDENTIAL|AUTHORIZATION|API_?KEY)", re.IGNORECASE)
_SECRET_VALUE_RE = re.compile(r"(?i)\b(token|api[_-]?key|secret|password|passwd)(\s*[=:]\s*)([^\s,;\"']+)")
_BEARER_RE = re.compile(r"(?i)\b(bearer\s+)([A-Za-z0-9._~+/=-]+)")
_JWT_RE = re.compile(r"\beyJ[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\.[A-Za-z0-9_-]+\b")


def redact_string(text: str) -> str:
    text = _SECRET_VALUE_RE.sub(lambda m: f"{m.group(1)}{m.group(2)}{MASK}", text)
    text = _BEARER_RE.sub(lambda m: f"{m.group(1)}{MASK}", text)
    return _JWT_RE.sub(MASK, text)


def redact_value(value: Any) -> Any:
    if isinstance(value, str):
        return redact_string(value)
    if isinstance(value, dict):
        return redact_mapping(value)
    if isinstance(value, (list, tuple)):
        return [redact_value(item) for item in value]
    return value


def redact_mapping(values: dict) -> dict:
    """Mask secret-named keys and scrub credentials out of every nested string."""
    return {
        key: MASK if _SECRET_KEY_RE.search(str(key)) else redact_value(value)
        for key, value in values.items()
    }
