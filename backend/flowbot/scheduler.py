# /flowbot/scheduler.py

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler

from flowbot.runtime import Runtime

logger = logging.getLogger(__name__)


def build_scheduler(runtime: Runtime) -> AsyncIOScheduler:
    """Background sweeps for one runtime. The caller starts and shuts it down."""
    settings = runtime.settings
    scheduler = AsyncIOScheduler(timezone="UTC")

    # Job 1: Resume or fail waits whose deadline passed
    scheduler.add_job(
        runtime.monitor.sweep_wait_timeouts,
        'interval',
        seconds=settings.wait_timeout_sweep_seconds,
        id="wait_timeout_sweep_job",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    logger.info(f"Scheduled job: sweep_wait_timeouts (every {settings.wait_timeout_sweep_seconds} seconds).")

    # Job 2: Retention sweep, daily at 3 AM UTC
    scheduler.add_job(
        runtime.monitor.sweep_expired,
        'cron',
        hour=3,
        minute=0,
        args=[settings.execution_retention_days],
        id="execution_retention_job",
        replace_existing=True,
    )
    logger.info(f"Scheduled job: sweep_expired (daily at 3 AM, keeping {settings.execution_retention_days} days).")

    return scheduler
