"""Worker entry point: run the bonus sweeps on their cron schedule."""

from __future__ import annotations

import asyncio
import signal
from pathlib import Path

from loguru import logger

from bonus_ledger import __version__
from bonus_ledger.core.logging import configure_logging
from bonus_ledger.core.settings import settings
from bonus_ledger.db.session import async_session, engine
from bonus_ledger.scheduling import BonusJobScheduler


async def run_worker() -> None:
    if not settings.bonus_job_scheduler_enabled:
        logger.warning("Bonus job scheduler disabled; set BONUS_JOB_SCHEDULER_ENABLED=true to run sweeps")
        return

    scheduler = BonusJobScheduler(
        session_factory=async_session,
        config_path=Path(settings.bonus_job_schedule_path),
    )
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    scheduler.start()
    try:
        await stop_event.wait()
    finally:
        await scheduler.stop()
        await engine.dispose()


def main() -> None:
    configure_logging(
        service_name="bonus-ledger-worker",
        environment=settings.environment,
        version=__version__,
        level=settings.log_level,
    )
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
