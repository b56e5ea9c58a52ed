from __future__ import annotations

import logging
import time
from datetime import date
from typing import Callable
from uuid import uuid4

import httpx

from portflow.core.agents.bridge import build_bridge
from portflow.core.backend.client import BackendClient
from portflow.core.config import Settings
from portflow.core.logging import log_context
from portflow.core.models.llm_provider import PortflowLLM
from portflow.core.observability.trace import Trace
from portflow.core.orchestration import policies
from portflow.core.orchestration.classifier import IntentClassifier
from portflow.core.orchestration.decomposer import TaskDecomposer
from portflow.core.orchestration.errors import SanitizationError
from portflow.core.orchestration.executor import Executor
from portflow.core.orchestration.sanitizer import Sanitizer
from portflow.core.orchestration.schemas import ChatResult, SanitizedInput, ValidationVerdict
from portflow.core.orchestration.synthesizer import OutputSynthesizer
from portflow.core.orchestration.validator import OutputValidator
from portflow.core.sessions.store import SessionInfo, SessionStore, Turn
from portflow.core.tools.base import ToolContext

logger = logging.getLogger("portflow.orchestrator")

GENERIC_ERROR_TEXT = "Sorry, there was a processing error. Please retry."
REAUTH_TEXT = "Your credentials are no longer valid for this session. Please sign in again."


class Orchestrator:
    def __init__(
        self,
        settings: Settings,
        store: SessionStore,
        sanitizer: Sanitizer,
        classifier: IntentClassifier,
        decomposer: TaskDecomposer,
        executor: Executor,
        synthesizer: OutputSynthesizer,
        validator: OutputValidator,
        http_client: httpx.Client | None = None,
    ) -> None:
        self.settings = settings
        self.store = store
        self.sanitizer = sanitizer
        self.classifier = classifier
        self.decomposer = decomposer
        self.executor = executor
        self.synthesizer = synthesizer
        self.validator = validator
        self.http_client = http_client

    def chat(
        self,
        message: str,
        session_id: str | None = None,
        *,
        role: str,
        credential: str,
        owner: str | None = None,
    ) -> ChatResult:
        role = policies.normalize_role(role)
        if not policies.is_known_role(role):
            raise ValueError(f"unknown role {role!r}")
        session_id = session_id or str(uuid4())
        request_id = str(uuid4())
        trace = Trace(task="chat", session_id=session_id, request_id=request_id)

        with log_context(request_id=request_id, session_id=session_id):
            with self.store.acquire(session_id, role, credential, owner=owner) as session:
                trace.emit("RunStarted", {"role": role})
                if not session.credential:
                    trace.emit("CredentialRevoked", {})
                    return ChatResult(text=REAUTH_TEXT, session_id=session_id, status="rejected", trace_events=trace.events)

                try:
                    sanitized = self.sanitizer.sanitize(message, role=role, session_id=session_id)
                except SanitizationError as exc:
                    trace.emit("InputRejected", {"code": exc.code})
                    logger.info("input_rejected", extra={"extra_fields": {"code": exc.code}})
                    return ChatResult(text=exc.message, session_id=session_id, status="rejected", trace_events=trace.events)

                try:
                    verdict, used_tools, unauthorized = self._run_pipeline(sanitized, session_id, role, session.credential, trace)
                except Exception:
                    logger.exception("pipeline_failed")
                    trace.emit("RunFailed", {})
                    return ChatResult(text=GENERIC_ERROR_TEXT, session_id=session_id, status="error", trace_events=trace.events)

                if unauthorized:
                    self.store.invalidate_credential(session_id)
                now = self.store.wall_clock()
                self.store.append_exchange(
                    session,
                    Turn(speaker="user", text=sanitized.sanitized_text, timestamp=now),
                    Turn(speaker="agent", text=verdict.text, timestamp=now),
                )
                trace.emit("RunFinished", {"approved": verdict.approved, "used_tools": used_tools})
                return ChatResult(text=verdict.text, session_id=session_id, used_tools=used_tools, trace_events=trace.events)

    def _run_pipeline(
        self,
        sanitized: SanitizedInput,
        session_id: str,
        role: str,
        credential: str,
        trace: Trace,
    ) -> tuple[ValidationVerdict, list[str], bool]:
        if sanitized.injection_detected:
            trace.emit("InjectionFlagged", {"families": sanitized.injection_families})
        history = self.store.history(session_id)

        classification = self.classifier.classify(sanitized, history=history, role=role, trace=trace)
        trace.emit(
            "IntentClassified",
            {
                "category": classification.category,
                "confidence": classification.confidence,
                "target_capability": classification.target_capability,
                "secondary_categories": classification.secondary_categories,
            },
        )

        plan = self.decomposer.decompose(classification, sanitized, role=role, trace=trace)
        with log_context(plan_id=plan.id):
            context = ToolContext(
                role=role,
                credential=credential,
                backend=BackendClient(
                    self.settings.api_base_url,
                    credential,
                    timeout_s=self.settings.tool_timeout_s,
                    client=self.http_client,
                ),
            )
            results = self.executor.execute(plan, context, trace=trace)

            output = self.synthesizer.synthesize(results, classification, role, history, plan=plan, trace=trace)
            verdict = self.validator.validate(output, role)
        trace.emit(
            "OutputValidated",
            {"approved": verdict.approved, "redactions": [item.rule for item in verdict.redactions]},
        )
        unauthorized = any(result.error_kind == "unauthorized" for result in results)
        return verdict, output.used_tools, unauthorized

    def clear_session(self, session_id: str) -> bool:
        return self.store.clear(session_id)

    def get_history(self, session_id: str) -> list[Turn]:
        return self.store.history(session_id)

    def list_active_sessions(self) -> list[SessionInfo]:
        return self.store.list_active()

    def sweep_sessions(self) -> list[str]:
        return self.store.sweep()


def build_orchestrator(
    settings: Settings | None = None,
    *,
    llm: PortflowLLM | None = None,
    http_client: httpx.Client | None = None,
    store: SessionStore | None = None,
    today: Callable[[], date] = date.today,
    sleep: Callable[[float], None] = time.sleep,
) -> Orchestrator:
    settings = settings or Settings.from_env()
    llm = llm if llm is not None else PortflowLLM(client=http_client)
    bridge = build_bridge(mode=settings.agent_mode, llm=llm, max_steps=llm.config.max_steps)
    return Orchestrator(
        settings=settings,
        store=store or SessionStore(timeout_s=settings.session_timeout_s),
        sanitizer=Sanitizer(
            min_chars=settings.min_input_chars,
            max_chars=settings.max_input_chars,
            strict=settings.strict_injection,
        ),
        classifier=IntentClassifier(threshold=settings.confidence_threshold, llm=llm, history_window=settings.history_window),
        decomposer=TaskDecomposer(max_subtasks=settings.max_subtasks, catalogs=bridge.catalogs(), today=today),
        executor=Executor(
            bridge,
            max_retries=settings.tool_retries,
            backoff_base_s=settings.backoff_base_s,
            backoff_max_s=settings.backoff_max_s,
            max_workers=settings.executor_workers,
            sleep=sleep,
        ),
        synthesizer=OutputSynthesizer(llm=llm),
        validator=OutputValidator(mode=settings.redaction_mode),
        http_client=http_client,
    )
