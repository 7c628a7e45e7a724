"""APScheduler job definitions."""

import logging

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from pricewatch.config import settings
from pricewatch.worker.tasks import TaskRunner, task_runner

logger = logging.getLogger(__name__)


def setup_scheduler(runner: TaskRunner = task_runner) -> AsyncIOScheduler:
    """
    Setup and configure APScheduler.

    Each sweep is its own job with its own period:
    - check sweep every settings.check_sweep_interval_minutes
    - ingestion processing every settings.ingest_sweep_interval_minutes
    - quality rescore every settings.quality_rescore_interval_hours
    - cleanup and expiry daily at settings.cleanup_hour
    - weekly digest on settings.digest_day_of_week at settings.digest_hour

    Returns:
        Configured scheduler instance
    """
    scheduler = AsyncIOScheduler()

    scheduler.add_job(
        runner.check_due_watches,
        IntervalTrigger(minutes=max(1, settings.check_sweep_interval_minutes)),
        id="watch_check",
        name="Evaluate due watches",
        max_instances=1,  # Prevent overlapping runs
        coalesce=True,
        misfire_grace_time=300,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.process_ingested,
        IntervalTrigger(minutes=max(1, settings.ingest_sweep_interval_minutes)),
        id="ingest_processing",
        name="Validate, merge and promote provider records",
        max_instances=1,
        coalesce=True,
        misfire_grace_time=300,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.rescore_quality,
        IntervalTrigger(hours=max(1, settings.quality_rescore_interval_hours)),
        id="quality_rescore",
        name="Recompute watch and observation quality scores",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.cleanup,
        CronTrigger(hour=settings.cleanup_hour, minute=0),
        id="cleanup",
        name="Purge old data and expire past watches",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        runner.send_weekly_digests,
        CronTrigger(day_of_week=settings.digest_day_of_week, hour=settings.digest_hour, minute=0),
        id="weekly_digest",
        name="Send weekly watch digests",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    logger.info(
        "Scheduler configured: check sweep every %d minutes, ingestion every %d minutes, "
        "quality rescore every %d hours, cleanup at %02d:00, digest %s %02d:00",
        settings.check_sweep_interval_minutes,
        settings.ingest_sweep_interval_minutes,
        settings.quality_rescore_interval_hours,
        settings.cleanup_hour,
        settings.digest_day_of_week,
        settings.digest_hour,
    )

    return scheduler
