"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from pricewatch.config import settings
from pricewatch.worker.tasks import task_runner

logger = logging.getLogger(__name__)


def setup_scheduler() -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Only the schedule tick runs here. Each tick decides whether a digest slot
    is due; the digest itself runs on the worker via the queue.

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()
    tick_minutes = max(1, int(settings.schedule_tick_minutes))

    scheduler.add_job(
        task_runner.scheduled_tick,
        IntervalTrigger(minutes=tick_minutes),
        id="digest_schedule_tick",
        name="Evaluate digest schedule",
        max_instances=1,  # Prevent overlapping ticks
        coalesce=True,
        misfire_grace_time=300,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: digest schedule tick every %d minutes (timezone %s)",
        tick_minutes,
        settings.schedule_timezone,
    )
    return scheduler
