"""Background jobs using APScheduler."""

import logging
from datetime import datetime, timedelta

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from conveyor.exceptions import ConveyorError
from conveyor.pipeline.models import utcnow
from conveyor.runtime import Runtime

logger = logging.getLogger(__name__)


def retention_cutoff(hours: float, now: datetime | None = None) -> datetime:
    """Runs that ended before this instant are eligible for eviction."""
    return (now or utcnow()) - timedelta(hours=hours)


def retention_job(runtime: Runtime) -> int:
    """Evict old terminal runs and expired idempotency keys."""
    cutoff = retention_cutoff(runtime.settings.store.retention_hours)
    removed = runtime.store.evict(cutoff)
    runtime.trigger.purge_expired_keys()
    return removed


async def scheduled_trigger_job(runtime: Runtime, pipeline_name: str) -> None:
    """Start a run of a pipeline with its default parameters."""
    try:
        result = await runtime.trigger.trigger(pipeline_name)
    except ConveyorError as e:
        logger.error(f"Scheduled run of '{pipeline_name}' was not started: {e}")
        return
    logger.info(f"Scheduled run {result.run_id} of '{pipeline_name}' started")


def create_scheduler(runtime: Runtime) -> AsyncIOScheduler:
    """Create the scheduler with the retention job and pipeline cron jobs.

    The caller starts it from inside a running event loop.
    """
    settings = runtime.settings
    scheduler = AsyncIOScheduler(timezone="UTC")

    scheduler.add_job(
        retention_job,
        IntervalTrigger(minutes=settings.scheduler.retention_interval_minutes),
        args=[runtime],
        id="run-retention",
        name="Run retention",
    )
    logger.info(
        f"Registered job: Run retention (every {settings.scheduler.retention_interval_minutes} min, "
        f"keep {settings.store.retention_hours:g}h)"
    )

    for pipeline in runtime.catalog:
        if not pipeline.schedule:
            continue
        try:
            trigger = CronTrigger.from_crontab(pipeline.schedule, timezone="UTC")
        except ValueError as e:
            logger.error(f"Invalid schedule for pipeline '{pipeline.name}': {e}")
            continue

        scheduler.add_job(
            scheduled_trigger_job,
            trigger,
            args=[runtime, pipeline.name],
            id=f"pipeline-{pipeline.name}",
            name=f"Pipeline: {pipeline.name}",
        )
        logger.info(f"Registered job: Pipeline {pipeline.name} ({pipeline.schedule})")

    return scheduler
