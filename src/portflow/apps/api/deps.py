from __future__ import annotations

from functools import lru_cache

from portflow.core.config import Settings
from portflow.core.orchestration.orchestrator import Orchestrator, build_orchestrator
from portflow.core.scheduler.scheduler import SchedulerService


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache(maxsize=1)
def get_orchestrator() -> Orchestrator:
    return build_orchestrator(get_settings())


@lru_cache(maxsize=1)
def get_scheduler_service() -> SchedulerService:
    return SchedulerService()
