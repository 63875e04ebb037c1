from typing import Optional

import structlog
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from notisync.core.health_check import HealthCheck
from notisync.services.notification_poller import PollOutcome

logger = structlog.get_logger(__name__)

POLL_JOB_ID = "poll_notifications"
HEALTH_JOB_ID = "log_health"


async def job_poll_notifications(service) -> PollOutcome:
    """Scheduled poll. poll() never raises, so a bad cycle cannot kill the job."""
    outcome = await service.poller.poll()
    logger.info("Poll finished", outcome=outcome.value, notifications=len(service.poller.current_set))
    return outcome


def job_log_health(service) -> dict:
    health = HealthCheck.check_overall_health(service)
    logger.info("Health", status=health["status"])
    return health


def configure_scheduler(service, scheduler: Optional[AsyncIOScheduler] = None) -> AsyncIOScheduler:
    # Job configuration for durability:
    # - max_instances=1: a slow poll is never overlapped by the next one
    # - coalesce=True: polls missed during suspension run once on wake
    # - misfire_grace_time: a late poll still runs within one interval
    scheduler = scheduler or AsyncIOScheduler()
    interval_minutes = service.settings.POLL_INTERVAL_MINUTES

    scheduler.add_job(
        job_poll_notifications,
        IntervalTrigger(minutes=interval_minutes),
        args=[service],
        id=POLL_JOB_ID,
        max_instances=1,
        misfire_grace_time=max(1, int(interval_minutes * 60)),
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        job_log_health,
        IntervalTrigger(minutes=15),
        args=[service],
        id=HEALTH_JOB_ID,
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    return scheduler


def start_scheduler(service, scheduler: Optional[AsyncIOScheduler] = None) -> AsyncIOScheduler:
    """Register jobs and start. Must be called from inside the running event loop."""
    scheduler = configure_scheduler(service, scheduler)
    scheduler.start()
    logger.info("Polling scheduled", interval_minutes=service.settings.POLL_INTERVAL_MINUTES)
    return scheduler
