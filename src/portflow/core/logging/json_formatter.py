from __future__ import annotations

import json
import logging
import traceback
from datetime import datetime, timezone
from typing import Any

from .context import get_log_context
from .redact import redact_mapping, redact_string

_BASE_KEYS = frozenset({"ts_iso_utc", "level", "logger", "msg"})


def _utc_iso(created: float) -> str:
    return datetime.fromtimestamp(created, tz=timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _exception_fields(exc_info: Any) -> dict[str, str]:
    exc_type, exc_value, exc_tb = exc_info
    return {
        "exc_type": exc_type.__name__ if exc_type else "Exception",
        "exc_msg": redact_string(str(exc_value)) if exc_value else "",
        "stack": redact_string("".join(traceback.format_exception(exc_type, exc_value, exc_tb))),
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record: base fields, then the bound log context, then ``extra_fields``."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts_iso_utc": _utc_iso(record.created),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_string(record.getMessage()),
        }
        if record.threadName and record.threadName != "MainThread":
            payload["thread"] = record.threadName
        payload.update(get_log_context())

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            for key, value in redact_mapping(extra_fields).items():
                # never let a structured field overwrite the base keys
                payload[f"field_{key}" if key in _BASE_KEYS else key] = value

        if record.exc_info and record.exc_info[0] is not None:
            payload.update(_exception_fields(record.exc_info))

        return json.dumps(payload, separators=(",", ":"), ensure_ascii=False, default=str)
