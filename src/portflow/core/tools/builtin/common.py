from __future__ import annotations

import re
from typing import Any

from portflow.core.tools.base import ToolContext, ToolInputError

_ID_LIKE = re.compile(r"^(\d+|[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12})$", re.IGNORECASE)


def bookings_path(role: str) -> str:
    if role in {"OPERATOR", "ADMIN"}:
        return "/operator/bookings"
    if role == "DRIVER":
        return "/driver/bookings/mine"
    return "/carrier/bookings"


# only these route prefixes serve /terminals/{id}; carriers filter the list
_DETAIL_ROLES = frozenset({"ADMIN", "OPERATOR"})


def terminals_path(role: str) -> str:
    if role == "ADMIN":
        return "/admin/terminals"
    if role == "OPERATOR":
        return "/operator/terminals"
    return "/carrier/terminals"


def as_list(data: Any, *keys: str) -> list[dict[str, Any]]:
    if isinstance(data, dict):
        for key in (*keys, "data"):
            if isinstance(data.get(key), list):
                data = data[key]
                break
        else:
            data = []
    return [item for item in (data or []) if isinstance(item, dict)]


def list_terminals(context: ToolContext) -> list[dict[str, Any]]:
    return as_list(context.backend.get(terminals_path(context.role)), "terminals")


def resolve_terminal(context: ToolContext, reference: str) -> dict[str, Any]:
    """Find a terminal by id or by name ("A", "Terminal A", "terminal a")."""
    ref = str(reference).strip()
    by_id = bool(_ID_LIKE.match(ref))
    if by_id and context.role in _DETAIL_ROLES:
        terminal = context.backend.get(f"{terminals_path(context.role)}/{ref}")
        if isinstance(terminal, dict) and terminal:
            return terminal
        raise ToolInputError(f"terminal {ref} not found")

    wanted = {ref.casefold(), f"terminal {ref}".casefold()}
    for terminal in list_terminals(context):
        if by_id and str(terminal.get("id")).casefold() == ref.casefold():
            return terminal
        if str(terminal.get("name") or "").casefold() in wanted:
            return terminal
    raise ToolInputError(f"terminal {ref} not found")
