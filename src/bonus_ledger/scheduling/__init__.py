"""Cron scheduling for bonus ledger sweeps."""

from .config import JobDefinition, RetryPolicy, ScheduleConfig, load_job_definitions  # noqa: F401
from .runner import BonusJobScheduler  # noqa: F401
