"""Scheduler runtime for bonus ledger sweeps."""

from __future__ import annotations

import asyncio
import inspect
import random
import time
from importlib import import_module
from pathlib import Path
from typing import Any, Awaitable, Callable
from zoneinfo import ZoneInfo

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from loguru import logger

from bonus_ledger.observability.scheduler import get_bonus_scheduler_store

from .config import JobDefinition, ScheduleConfig, load_job_definitions

SessionFactory = Callable[[], Awaitable[Any]] | Callable[[], Any]
JobCallable = Callable[..., Awaitable[Any]]


def resolve_task(task: str) -> JobCallable:
    """Import ``package.module.function`` and check it is a coroutine function."""

    module_name, _, attr = task.rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid task path: {task}")
    func = getattr(import_module(module_name), attr, None)
    if func is None:
        raise AttributeError(f"Task {task} not found")
    if not inspect.iscoroutinefunction(func):
        raise TypeError(f"Task {task} must be an async function")
    return func


class BonusJobScheduler:
    """Register the configured sweeps on an APScheduler event loop scheduler."""

    def __init__(self, *, session_factory: SessionFactory, config_path: Path) -> None:
        self._session_factory = session_factory
        self._config_path = config_path
        self._config: ScheduleConfig | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._observability = get_bonus_scheduler_store()

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None

    def start(self) -> None:
        config = load_job_definitions(self._config_path)
        timezone = ZoneInfo(config.timezone)
        scheduler = AsyncIOScheduler(timezone=timezone)

        for job in config.enabled_jobs:
            scheduler.add_job(
                self._wrap_callable(resolve_task(job.task), job),
                trigger=CronTrigger.from_crontab(job.cron, timezone=timezone),
                id=job.id,
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            logger.info("Registered bonus job", job_id=job.id, task=job.task, cron=job.cron)

        scheduler.start()
        self._config = config
        self._scheduler = scheduler
        logger.info("Bonus job scheduler started", jobs=len(config.enabled_jobs))

    async def stop(self) -> None:
        if self._scheduler is None:
            return
        result = self._scheduler.shutdown(wait=False)
        if inspect.isawaitable(result):
            await result
        self._scheduler = None
        logger.info("Bonus job scheduler stopped")

    def _wrap_callable(self, func: JobCallable, job: JobDefinition) -> Callable[[], Awaitable[None]]:
        policy = job.retry

        async def _runner() -> None:
            self._observability.record_dispatch(job.id, job.task)
            started_at = time.perf_counter()

            for attempt in range(1, policy.max_attempts + 1):
                try:
                    result = await func(session_factory=self._session_factory, **job.kwargs)
                except Exception as exc:
                    error_message = str(exc) or type(exc).__name__
                    self._observability.record_attempt_failure(job.id, job.task, attempts=attempt, error=error_message)
                    if attempt >= policy.max_attempts:
                        self._observability.record_run_failure(
                            job.id,
                            job.task,
                            runtime_seconds=time.perf_counter() - started_at,
                            attempts=attempt,
                            error=error_message,
                        )
                        logger.exception(
                            "Bonus job failed after retries",
                            job_id=job.id,
                            task=job.task,
                            attempts=attempt,
                        )
                        return

                    delay = policy.delay_for(attempt)
                    if policy.jitter_seconds:
                        delay += random.uniform(0, policy.jitter_seconds)
                    self._observability.record_retry(job.id, job.task, delay_seconds=delay, attempts=attempt + 1)
                    logger.warning(
                        "Bonus job retrying",
                        job_id=job.id,
                        task=job.task,
                        attempt=attempt + 1,
                        delay_seconds=delay,
                    )
                    if delay:
                        await asyncio.sleep(delay)
                    continue

                runtime_seconds = time.perf_counter() - started_at
                self._observability.record_success(
                    job.id,
                    job.task,
                    runtime_seconds=runtime_seconds,
                    attempts=attempt,
                    result=result if isinstance(result, dict) else None,
                )
                logger.info(
                    "Bonus job completed",
                    job_id=job.id,
                    task=job.task,
                    attempts=attempt,
                    runtime_seconds=runtime_seconds,
                )
                return

        return _runner

    def health(self) -> dict[str, object]:
        """Scheduler state plus per-job metrics for diagnostics."""

        snapshot = self._observability.snapshot()
        jobs = [
            {
                "id": job.id,
                "task": job.task,
                "cron": job.cron,
                "enabled": job.enabled,
                "max_attempts": job.retry.max_attempts,
                "metrics": snapshot.jobs.get(job.id),
            }
            for job in (self._config.jobs if self._config else [])
        ]
        return {
            "running": self.is_running,
            "configured_jobs": len(jobs),
            "totals": snapshot.totals,
            "jobs": jobs,
        }


__all__ = ["BonusJobScheduler", "resolve_task"]
