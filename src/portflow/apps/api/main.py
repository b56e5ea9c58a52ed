from __future__ import annotations

import os
from uuid import uuid4

import uvicorn
from fastapi import FastAPI

from portflow.core.logging import configure_logging, log_context

from .deps import get_orchestrator, get_scheduler_service, get_settings
from .routes_chat import router as chat_router

configure_logging()

app = FastAPI(title="Port Flow API")
app.include_router(chat_router, prefix="/chat", tags=["chat"])


@app.middleware("http")
async def request_context_middleware(request, call_next):
    request_id = request.headers.get("X-Request-ID") or str(uuid4())
    with log_context(request_id=request_id):
        response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


@app.on_event("startup")
def startup() -> None:
    settings = get_settings()
    app.state.orchestrator = get_orchestrator()
    app.state.scheduler_service = get_scheduler_service()
    app.state.scheduler_service.schedule_session_sweep(app.state.orchestrator.sweep_sessions, settings.session_sweep_s)
    app.state.scheduler_service.start()


@app.on_event("shutdown")
def shutdown() -> None:
    get_scheduler_service().shutdown()


@app.get("/healthz")
def healthz() -> dict[str, object]:
    settings = get_settings()
    return {
        "ok": True,
        "backend": settings.api_base_url,
        "agent_mode": settings.agent_mode,
        "llm_provider": os.getenv("PORTFLOW_LLM_PROVIDER", "off").strip().casefold(),
        "active_sessions": len(get_orchestrator().list_active_sessions()),
        "jobs": [job.id for job in get_scheduler_service().list_jobs()],
    }


def run() -> None:
    uvicorn.run("portflow.apps.api.main:app", host=os.getenv("PORTFLOW_HOST", "127.0.0.1"), port=int(os.getenv("PORTFLOW_PORT", "8000")))
