from __future__ import annotations

import contextvars
import logging
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Any, Callable

from portflow.core.http import PermanentHTTPError, TransientHTTPError, UnauthorizedHTTPError, backoff_delay
from portflow.core.logging import log_context
from portflow.core.models.llm_provider import LLMOutputError, LLMUnavailable
from portflow.core.observability.trace import Trace
from portflow.core.orchestration.decomposer import topological_order
from portflow.core.orchestration.schemas import SubTask, TaskPlan, ToolResult
from portflow.core.tools.base import ToolContext, ToolInputError

logger = logging.getLogger("portflow.executor")


def classify_error(exc: BaseException) -> str:
    if isinstance(exc, UnauthorizedHTTPError):
        return "unauthorized"
    if isinstance(exc, (TransientHTTPError, LLMUnavailable)):
        return "transient"
    if isinstance(exc, (PermanentHTTPError, ToolInputError, LLMOutputError, ValueError)):
        return "permanent"
    return "internal"


class Executor:
    def __init__(
        self,
        bridge: Any,
        max_retries: int = 3,
        backoff_base_s: float = 0.25,
        backoff_max_s: float = 4.0,
        max_workers: int = 4,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.bridge = bridge
        self.max_retries = max_retries
        self.backoff_base_s = backoff_base_s
        self.backoff_max_s = backoff_max_s
        self.max_workers = max(1, max_workers)
        self.sleep = sleep

    def execute(self, plan: TaskPlan, context: ToolContext, trace: Trace | None = None) -> list[ToolResult]:
        """Run every sub-task once its dependencies have a result.

        Independent sub-tasks run concurrently. A dependency that failed or was
        skipped marks its dependents skipped. Results come back in plan order.
        """
        if plan.is_empty:
            return []

        pending = list(topological_order(plan.subtasks))
        results: dict[str, ToolResult] = {}
        running: dict[Future[ToolResult], SubTask] = {}

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(pending)), thread_name_prefix="portflow-exec") as pool:
            while pending or running:
                ready = self._ready(pending, results)
                while ready:
                    # a skip resolves at once and can unlock further skips
                    for subtask in ready:
                        pending.remove(subtask)
                        failed = [dep for dep in subtask.depends_on if not results[dep].success]
                        if failed:
                            results[subtask.id] = self._skipped(subtask, results[failed[0]])
                            self._event(trace, "SubTaskSkipped", subtask, reason=results[subtask.id].skipped_reason)
                            continue
                        self._event(trace, "SubTaskStarted", subtask)
                        run_context = contextvars.copy_context()
                        future = pool.submit(run_context.run, self._run_with_retries, subtask, context, trace)
                        running[future] = subtask
                    ready = self._ready(pending, results)

                if not running:
                    if pending:
                        # only reachable with dependency ids outside the plan
                        for subtask in pending:
                            results[subtask.id] = self._unresolved(subtask)
                        pending.clear()
                    break

                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for future in done:
                    subtask = running.pop(future)
                    results[subtask.id] = future.result()
                    self._event(
                        trace,
                        "SubTaskFinished",
                        subtask,
                        success=results[subtask.id].success,
                        attempt=results[subtask.id].attempt,
                    )

        return [results[subtask.id] for subtask in plan.subtasks]

    def _ready(self, pending: list[SubTask], results: dict[str, ToolResult]) -> list[SubTask]:
        return [subtask for subtask in pending if all(dep in results for dep in subtask.depends_on)]

    def _run_with_retries(self, subtask: SubTask, context: ToolContext, trace: Trace | None) -> ToolResult:
        start = time.perf_counter()
        attempt = 0
        while True:
            attempt += 1
            try:
                with log_context(subtask_id=subtask.id):
                    data = self.bridge.invoke(subtask, context, trace=trace)
                return ToolResult(
                    subtask_id=subtask.id,
                    tool_name=subtask.tool_name,
                    capability=subtask.capability,
                    success=True,
                    data=data,
                    latency_ms=int((time.perf_counter() - start) * 1000),
                    attempt=attempt,
                )
            except Exception as exc:
                kind = classify_error(exc)
                if kind == "transient" and attempt <= self.max_retries:
                    delay = backoff_delay(attempt - 1, self.backoff_base_s, self.backoff_max_s)
                    logger.info(
                        "subtask_retry",
                        extra={
                            "extra_fields": {
                                "subtask_id": subtask.id,
                                "tool": subtask.tool_name,
                                "attempt": attempt,
                                "delay_s": round(delay, 3),
                                "error": str(exc),
                            }
                        },
                    )
                    self._event(trace, "SubTaskRetry", subtask, attempt=attempt, error=str(exc))
                    self.sleep(delay)
                    continue
                if kind == "internal":
                    logger.exception("subtask_internal_error", extra={"extra_fields": {"subtask_id": subtask.id}})
                else:
                    logger.info(
                        "subtask_failed",
                        extra={
                            "extra_fields": {
                                "subtask_id": subtask.id,
                                "tool": subtask.tool_name,
                                "kind": kind,
                                "attempt": attempt,
                                "error": str(exc),
                            }
                        },
                    )
                return ToolResult(
                    subtask_id=subtask.id,
                    tool_name=subtask.tool_name,
                    capability=subtask.capability,
                    success=False,
                    error=str(exc) or exc.__class__.__name__,
                    error_kind=kind,  # type: ignore[arg-type]
                    latency_ms=int((time.perf_counter() - start) * 1000),
                    attempt=attempt,
                )

    def _skipped(self, subtask: SubTask, failed: ToolResult) -> ToolResult:
        return ToolResult(
            subtask_id=subtask.id,
            tool_name=subtask.tool_name,
            capability=subtask.capability,
            success=False,
            error=f"dependency {failed.subtask_id} ({failed.tool_name}) did not succeed",
            error_kind="skipped",
            attempt=0,
            skipped_reason=failed.tool_name,
        )

    def _unresolved(self, subtask: SubTask) -> ToolResult:
        return ToolResult(
            subtask_id=subtask.id,
            tool_name=subtask.tool_name,
            capability=subtask.capability,
            success=False,
            error="unresolved dependency",
            error_kind="skipped",
            attempt=0,
            skipped_reason="unresolved dependency",
        )

    def _event(self, trace: Trace | None, name: str, subtask: SubTask, **payload: Any) -> None:
        if trace is not None:
            trace.emit(name, {"subtask_id": subtask.id, "tool": subtask.tool_name, **payload})
