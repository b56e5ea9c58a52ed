from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar, Token
from types import MappingProxyType
from typing import Iterator, Mapping

# Identifiers attached to every log line emitted while a request is in flight.
CONTEXT_FIELDS = ("request_id", "session_id", "plan_id", "subtask_id")

_EMPTY: Mapping[str, str] = MappingProxyType({})
_fields: ContextVar[Mapping[str, str]] = ContextVar("portflow_log_fields", default=_EMPTY)


def set_context(**fields: str | None) -> Token[Mapping[str, str]]:
    unknown = sorted(set(fields) - set(CONTEXT_FIELDS))
    if unknown:
        raise TypeError(f"unknown log context fields: {unknown}")
    merged = dict(_fields.get())
    merged.update({key: value for key, value in fields.items() if value is not None})
    return _fields.set(MappingProxyType(merged))


def reset_context(token: Token[Mapping[str, str]]) -> None:
    _fields.reset(token)


@contextmanager
def log_context(**fields: str | None) -> Iterator[None]:
    """Bind identifiers for the duration of the block; inner blocks add to the outer ones."""
    token = set_context(**fields)
    try:
        yield
    finally:
        reset_context(token)


def get_log_context() -> dict[str, str]:
    current = _fields.get()
    return {key: current[key] for key in CONTEXT_FIELDS if key in current}
