"""APScheduler setup for background jobs."""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from calmesh.config import get_settings

logger = logging.getLogger(__name__)

_scheduler: Optional[AsyncIOScheduler] = None


def setup_scheduler() -> AsyncIOScheduler:
    """Set up and start the background scheduler."""
    global _scheduler

    settings = get_settings()

    _scheduler = AsyncIOScheduler()

    _scheduler.add_job(
        "calmesh.jobs.sync_job:run_periodic_sync",
        trigger=IntervalTrigger(minutes=settings.sync_interval_minutes),
        id="periodic_sync",
        name="Periodic Calendar Sync",
        replace_existing=True,
    )

    _scheduler.add_job(
        "calmesh.jobs.sync_job:refresh_expiring_tokens",
        trigger=IntervalTrigger(minutes=settings.token_refresh_minutes),
        id="token_refresh",
        name="Token Refresh",
        replace_existing=True,
    )

    if settings.enable_webhooks:
        _scheduler.add_job(
            "calmesh.jobs.webhook_renewal:renew_expiring_channels",
            trigger=IntervalTrigger(hours=settings.webhook_renewal_hours),
            id="webhook_renewal",
            name="Watch Channel Renewal",
            replace_existing=True,
        )
        # One-off registration on startup
        _scheduler.add_job(
            "calmesh.jobs.webhook_renewal:register_all_channels",
            id="webhook_initial_registration",
            name="Watch Channel Registration",
            replace_existing=True,
        )
    else:
        logger.info("Watch channel jobs disabled (ENABLE_WEBHOOKS=false)")

    _scheduler.start()
    logger.info("Background scheduler started")

    return _scheduler


def shutdown_scheduler() -> None:
    """Shutdown the scheduler."""
    global _scheduler

    if _scheduler:
        _scheduler.shutdown(wait=False)
        _scheduler = None
        logger.info("Background scheduler stopped")


def get_scheduler() -> Optional[AsyncIOScheduler]:
    return _scheduler
