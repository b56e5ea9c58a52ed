from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from portflow.core.config import Settings
from portflow.core.orchestration.errors import SessionOwnerMismatch, SessionRoleMismatch
from portflow.core.orchestration.orchestrator import Orchestrator

from .auth import Caller, get_caller
from .deps import get_orchestrator, get_settings

router = APIRouter()


class ChatRequest(BaseModel):
    message: str
    session_id: str | None = None


def _owned_session(orchestrator: Orchestrator, session_id: str, caller: Caller) -> None:
    try:
        orchestrator.store.check_access(session_id, caller.role, caller.owner)
    except (SessionRoleMismatch, SessionOwnerMismatch) as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc


@router.post("/")
def chat(
    request: ChatRequest,
    caller: Caller = Depends(get_caller),
    orchestrator: Orchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings),
) -> dict[str, Any]:
    try:
        result = orchestrator.chat(
            request.message,
            request.session_id,
            role=caller.role,
            credential=caller.credential,
            owner=caller.owner,
        )
    except (SessionRoleMismatch, SessionOwnerMismatch) as exc:
        raise HTTPException(status_code=403, detail=str(exc)) from exc

    payload: dict[str, Any] = {
        "text": result.text,
        "session_id": result.session_id,
        "used_tools": result.used_tools,
        "status": result.status,
    }
    if settings.debug:
        payload["trace"] = result.trace_events
    return payload


@router.get("/sessions")
def list_sessions(
    caller: Caller = Depends(get_caller),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    sessions = orchestrator.list_active_sessions()
    if caller.role != "ADMIN":
        sessions = [item for item in sessions if item.owner == caller.owner and item.role == caller.role]
    return {
        "sessions": [
            {
                "session_id": item.session_id,
                "role": item.role,
                "created_at": item.created_at,
                "turns": item.turns,
                "busy": item.busy,
            }
            for item in sessions
        ]
    }


@router.get("/sessions/{session_id}/history")
def session_history(
    session_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    _owned_session(orchestrator, session_id, caller)
    return {
        "session_id": session_id,
        "history": [
            {"speaker": turn.speaker, "text": turn.text, "timestamp": turn.timestamp, "error": turn.error}
            for turn in orchestrator.get_history(session_id)
        ],
    }


@router.delete("/sessions/{session_id}")
def clear_session(
    session_id: str,
    caller: Caller = Depends(get_caller),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    _owned_session(orchestrator, session_id, caller)
    return {"session_id": session_id, "cleared": orchestrator.clear_session(session_id)}
