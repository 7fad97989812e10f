"""Observability store for bonus job scheduler runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Any, Dict

from bonus_ledger.core.clock import utcnow


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


@dataclass
class JobRunState:
    job_id: str
    task: str
    runs: int = 0
    success: int = 0
    run_failures: int = 0
    attempt_failures: int = 0
    retries: int = 0
    consecutive_failures: int = 0
    runtime_seconds: float = 0.0
    last_started_at: datetime | None = None
    last_success_at: datetime | None = None
    last_error_at: datetime | None = None
    last_error: str | None = None
    last_attempts: int = 0
    last_retry_delay_seconds: float | None = None
    last_result: Dict[str, Any] | None = None

    def as_dict(self) -> Dict[str, object]:
        return {
            "job_id": self.job_id,
            "task": self.task,
            "totals": {
                "runs": self.runs,
                "success": self.success,
                "run_failures": self.run_failures,
                "attempt_failures": self.attempt_failures,
                "retries": self.retries,
                "consecutive_failures": self.consecutive_failures,
            },
            "runtime_seconds": self.runtime_seconds,
            "last_started_at": _isoformat(self.last_started_at),
            "last_success_at": _isoformat(self.last_success_at),
            "last_error_at": _isoformat(self.last_error_at),
            "last_error": self.last_error,
            "last_attempts": self.last_attempts,
            "last_retry_delay_seconds": self.last_retry_delay_seconds,
            "last_result": self.last_result,
        }


@dataclass
class SchedulerSnapshot:
    """Aggregated totals plus per-job state."""

    totals: Dict[str, int]
    jobs: Dict[str, Dict[str, object]] = field(default_factory=dict)

    def as_dict(self) -> Dict[str, object]:
        return {"totals": dict(self.totals), "jobs": dict(self.jobs)}


class BonusSchedulerObservabilityStore:
    """Tracks bonus sweep dispatches, retries and failures."""

    _TOTAL_KEYS = ("runs", "success", "run_failures", "attempt_failures", "retries")

    def __init__(self) -> None:
        self._lock = Lock()
        self._jobs: Dict[str, JobRunState] = {}

    def reset(self) -> None:
        with self._lock:
            self._jobs.clear()

    def _state(self, job_id: str, task: str) -> JobRunState:
        state = self._jobs.get(job_id)
        if state is None:
            state = self._jobs[job_id] = JobRunState(job_id=job_id, task=task)
        state.task = task
        return state

    def record_dispatch(self, job_id: str, task: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.runs += 1
            state.last_started_at = utcnow()
            state.last_attempts = 0
            state.last_retry_delay_seconds = None

    def record_attempt_failure(self, job_id: str, task: str, *, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.attempt_failures += 1
            state.consecutive_failures += 1
            state.last_attempts = attempts
            state.last_error = error
            state.last_error_at = utcnow()

    def record_retry(self, job_id: str, task: str, *, delay_seconds: float, attempts: int) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.retries += 1
            state.last_attempts = attempts
            state.last_retry_delay_seconds = delay_seconds

    def record_success(
        self,
        job_id: str,
        task: str,
        *,
        runtime_seconds: float,
        attempts: int,
        result: Dict[str, Any] | None = None,
    ) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.success += 1
            state.consecutive_failures = 0
            state.runtime_seconds += runtime_seconds
            state.last_attempts = attempts
            state.last_success_at = utcnow()
            state.last_error = None
            state.last_error_at = None
            state.last_result = result

    def record_run_failure(self, job_id: str, task: str, *, runtime_seconds: float, attempts: int, error: str) -> None:
        with self._lock:
            state = self._state(job_id, task)
            state.run_failures += 1
            state.runtime_seconds += runtime_seconds
            state.last_attempts = attempts
            state.last_error = error
            state.last_error_at = utcnow()

    def snapshot(self) -> SchedulerSnapshot:
        with self._lock:
            jobs = {job_id: state.as_dict() for job_id, state in self._jobs.items()}
            totals = {key: sum(getattr(state, key) for state in self._jobs.values()) for key in self._TOTAL_KEYS}
        return SchedulerSnapshot(totals=totals, jobs=jobs)


_SCHEDULER_STORE = BonusSchedulerObservabilityStore()


def get_bonus_scheduler_store() -> BonusSchedulerObservabilityStore:
    return _SCHEDULER_STORE


__all__ = [
    "BonusSchedulerObservabilityStore",
    "SchedulerSnapshot",
    "get_bonus_scheduler_store",
]
