from pathlib import Path

import pytest

from bonus_ledger.observability.scheduler import get_bonus_scheduler_store
from bonus_ledger.scheduling.config import JobDefinition, RetryPolicy, ScheduleConfig, load_job_definitions
from bonus_ledger.scheduling.runner import BonusJobScheduler, resolve_task

NO_BACKOFF = dict(base_backoff_seconds=0.0, backoff_multiplier=1.0, max_backoff_seconds=0.0, jitter_seconds=0.0)


def _job(job_id: str, *, max_attempts: int) -> JobDefinition:
    return JobDefinition(
        id=job_id,
        task=f"tests.{job_id}",
        cron="* * * * *",
        kwargs={},
        retry=RetryPolicy(max_attempts=max_attempts, **NO_BACKOFF),
    )


@pytest.fixture
def store():
    scheduler_store = get_bonus_scheduler_store()
    scheduler_store.reset()
    yield scheduler_store
    scheduler_store.reset()


@pytest.mark.asyncio
async def test_scheduler_retries_and_records_metrics(tmp_path: Path, store) -> None:
    scheduler = BonusJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")
    attempts = 0

    async def flaky_job(*, session_factory) -> dict:
        nonlocal attempts
        attempts += 1
        if attempts < 2:
            raise RuntimeError("boom")
        return {"rows_expired": 3}

    job = _job("job-alpha", max_attempts=3)
    await scheduler._wrap_callable(flaky_job, job)()

    snapshot = store.snapshot()
    assert snapshot.totals["runs"] == 1
    assert snapshot.totals["success"] == 1
    assert snapshot.totals["attempt_failures"] == 1
    assert snapshot.totals["retries"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot["last_success_at"] is not None
    assert job_snapshot["last_error"] is None
    assert job_snapshot["last_result"] == {"rows_expired": 3}
    assert attempts == 2


@pytest.mark.asyncio
async def test_scheduler_records_final_failure(tmp_path: Path, store) -> None:
    scheduler = BonusJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def failing_job(*, session_factory) -> None:
        raise RuntimeError("boom")

    job = _job("job-failure", max_attempts=2)
    await scheduler._wrap_callable(failing_job, job)()

    snapshot = store.snapshot()
    assert snapshot.totals["run_failures"] == 1
    job_snapshot = snapshot.jobs[job.id]
    assert job_snapshot["totals"]["consecutive_failures"] == 2
    assert job_snapshot["last_error"] == "boom"
    assert job_snapshot["last_error_at"] is not None


@pytest.mark.asyncio
async def test_scheduler_tracks_consecutive_failures_and_resets(tmp_path: Path, store) -> None:
    scheduler = BonusJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")
    run_count = 0

    async def sometimes_failing_job(*, session_factory) -> None:
        nonlocal run_count
        run_count += 1
        if run_count < 3:
            raise RuntimeError("boom")

    job = _job("job-consecutive", max_attempts=1)
    runner = scheduler._wrap_callable(sometimes_failing_job, job)

    await runner()
    await runner()

    snapshot = store.snapshot()
    job_snapshot = snapshot.jobs[job.id]
    assert snapshot.totals["runs"] == 2
    assert snapshot.totals["run_failures"] == 2
    assert job_snapshot["totals"]["consecutive_failures"] == 2
    assert job_snapshot["last_success_at"] is None

    await runner()

    snapshot = store.snapshot()
    job_snapshot = snapshot.jobs[job.id]
    assert snapshot.totals["success"] == 1
    assert job_snapshot["totals"]["consecutive_failures"] == 0
    assert job_snapshot["last_error"] is None


@pytest.mark.asyncio
async def test_scheduler_health_snapshot(tmp_path: Path, store) -> None:
    scheduler = BonusJobScheduler(session_factory=lambda: None, config_path=tmp_path / "noop.toml")

    async def successful_job(*, session_factory) -> None:
        return None

    job = _job("job-health", max_attempts=1)
    await scheduler._wrap_callable(successful_job, job)()
    scheduler._config = ScheduleConfig(timezone="UTC", jobs=[job])

    health = scheduler.health()
    assert health["running"] is False
    assert health["configured_jobs"] == 1
    assert health["totals"]["runs"] == 1
    assert health["jobs"][0]["max_attempts"] == 1
    assert health["jobs"][0]["metrics"]["totals"]["runs"] == 1
    assert health["jobs"][0]["metrics"]["last_success_at"] is not None


@pytest.mark.asyncio
async def test_scheduler_registers_enabled_jobs(tmp_path: Path, store) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "UTC"

        [jobs.points]
        task = "bonus_ledger.jobs.bonus.run_points_expiration"
        cron = "15 * * * *"

        [jobs.coupons]
        task = "bonus_ledger.jobs.bonus.expire_stale_coupons"
        cron = "30 2 * * *"
        enabled = false
        """
    )
    scheduler = BonusJobScheduler(session_factory=lambda: None, config_path=config_path)

    scheduler.start()
    try:
        health = scheduler.health()
        assert health["running"] is True
        assert [job["id"] for job in health["jobs"]] == ["points", "coupons"]
        assert [job["enabled"] for job in health["jobs"]] == [True, False]
    finally:
        await scheduler.stop()

    assert scheduler.is_running is False


def test_load_job_definitions_parses_retry_fields(tmp_path: Path) -> None:
    config_path = tmp_path / "schedules.toml"
    config_path.write_text(
        """
        timezone = "Europe/Berlin"

        [jobs.sample]
        task = "module.task"
        cron = "*/5 * * * *"
        max_attempts = 5
        base_backoff_seconds = 2
        backoff_multiplier = 3
        max_backoff_seconds = 30
        jitter_seconds = 1.5

        [jobs.broken]
        cron = "* * * * *"
        """
    )

    config = load_job_definitions(config_path)
    assert config.timezone == "Europe/Berlin"
    assert len(config.jobs) == 1
    retry = config.jobs[0].retry
    assert retry.max_attempts == 5
    assert retry.base_backoff_seconds == 2.0
    assert retry.backoff_multiplier == 3.0
    assert retry.max_backoff_seconds == 30.0
    assert retry.jitter_seconds == 1.5
    assert retry.delay_for(1) == 2.0
    assert retry.delay_for(2) == 6.0
    assert retry.delay_for(4) == 30.0

    with pytest.raises(FileNotFoundError):
        load_job_definitions(tmp_path / "missing.toml")


def test_resolve_task_requires_async_callable() -> None:
    assert resolve_task("bonus_ledger.jobs.bonus.run_points_expiration").__name__ == "run_points_expiration"

    with pytest.raises(ValueError):
        resolve_task("no_module_path")
    with pytest.raises(AttributeError):
        resolve_task("bonus_ledger.jobs.bonus.does_not_exist")
    with pytest.raises(TypeError):
        resolve_task("bonus_ledger.scheduling.config.parse_schedule")
