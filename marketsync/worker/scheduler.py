"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from marketsync.config import settings
from marketsync.worker.tasks import TaskRunner, task_runner

logger = logging.getLogger(__name__)


def setup_scheduler(runner: TaskRunner = task_runner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Scheduling overview:
    - Market tick every settings.scheduler_interval_minutes (claims and fetches)
    - Latest-price view refresh every settings.latest_view_refresh_minutes
    - Orphan sweep every settings.orphan_sweep_interval_minutes, so stuck
      jobs recover even when ticks are sparse

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        runner.run_market_tick,
        IntervalTrigger(minutes=max(1, settings.scheduler_interval_minutes)),
        id="market_tick",
        name="Claim and fetch market data jobs",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=300,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.refresh_latest_view,
        IntervalTrigger(minutes=max(1, settings.latest_view_refresh_minutes)),
        id="latest_view_refresh",
        name="Refresh latest market prices",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.sweep_orphans,
        IntervalTrigger(minutes=max(1, settings.orphan_sweep_interval_minutes)),
        id="orphan_sweep",
        name="Reclaim orphaned market jobs",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: tick=%dm, latest refresh=%dm, orphan sweep=%dm",
        settings.scheduler_interval_minutes,
        settings.latest_view_refresh_minutes,
        settings.orphan_sweep_interval_minutes,
    )
    return scheduler
