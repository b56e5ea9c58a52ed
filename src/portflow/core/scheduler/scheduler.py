from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable
from zoneinfo import ZoneInfo

from apscheduler.events import EVENT_JOB_ERROR, EVENT_JOB_EXECUTED, EVENT_JOB_MISSED, JobExecutionEvent
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler

logger = logging.getLogger("portflow.scheduler")

SESSION_SWEEP_JOB = "session-sweep"


@dataclass(frozen=True)
class JobInfo:
    id: str
    next_run_time_iso: str | None
    trigger: str


def is_test_mode() -> bool:
    return os.getenv("PORTFLOW_TEST_MODE", "").casefold() in {"1", "true", "yes", "on"}


class SchedulerService:
    """Periodic maintenance for the process. Jobs are kept in memory and re-registered on startup."""

    def __init__(self, timezone: str | None = None) -> None:
        self.test_mode = is_test_mode()
        self.timezone = ZoneInfo(timezone or os.getenv("PORTFLOW_TIMEZONE", "UTC"))
        self.scheduler = BackgroundScheduler(
            jobstores={"default": MemoryJobStore()},
            job_defaults={"coalesce": True, "max_instances": 1},
            timezone=self.timezone,
        )
        self.scheduler.add_listener(self._on_job_event, EVENT_JOB_EXECUTED | EVENT_JOB_ERROR | EVENT_JOB_MISSED)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    def start(self) -> None:
        if self.test_mode:
            logger.info("scheduler_not_started", extra={"extra_fields": {"reason": "test_mode"}})
            return
        if self._started:
            return
        self.scheduler.start()
        self._started = True
        logger.info("scheduler_started", extra={"extra_fields": {"jobs": [job.id for job in self.list_jobs()]}})

    def shutdown(self) -> None:
        if not self._started:
            return
        self.scheduler.shutdown(wait=False)
        self._started = False
        logger.info("scheduler_stopped")

    def add_interval(self, job_id: str, seconds: float, func: Callable[..., Any], kwargs: dict[str, Any] | None = None) -> None:
        self.scheduler.add_job(
            func,
            trigger="interval",
            id=job_id,
            seconds=seconds,
            kwargs=kwargs or {},
            replace_existing=True,
        )

    def schedule_session_sweep(self, sweep: Callable[[], list[str]], every_s: float) -> None:
        self.add_interval(SESSION_SWEEP_JOB, every_s, sweep)

    def remove_job(self, job_id: str) -> None:
        self.scheduler.remove_job(job_id)

    def list_jobs(self) -> list[JobInfo]:
        return [self._job_info(job) for job in self.scheduler.get_jobs()]

    @staticmethod
    def _job_info(job: Any) -> JobInfo:
        # pending jobs (scheduler not running) have no next_run_time yet
        next_run_time = getattr(job, "next_run_time", None)
        return JobInfo(
            id=job.id,
            next_run_time_iso=next_run_time.isoformat() if next_run_time else None,
            trigger=str(job.trigger),
        )

    def _on_job_event(self, event: JobExecutionEvent) -> None:
        fields: dict[str, Any] = {"job_id": event.job_id}
        if event.code == EVENT_JOB_ERROR:
            fields["error"] = repr(event.exception)
            logger.error("job_failed", extra={"extra_fields": fields})
        elif event.code == EVENT_JOB_MISSED:
            logger.warning("job_missed", extra={"extra_fields": fields})
        elif isinstance(event.retval, list) and event.retval:
            fields["result_count"] = len(event.retval)
            logger.info("job_finished", extra={"extra_fields": fields})
