"""Periodic sync and token refresh jobs."""

import logging
import sqlite3
from datetime import timedelta

from calmesh.database import format_ts, get_database, utcnow

logger = logging.getLogger(__name__)


async def run_periodic_sync() -> int:
    """Enqueue a sync for every enabled calendar; returns how many were queued."""
    if not await acquire_job_lock("periodic_sync"):
        logger.debug("Periodic sync already running, skipping")
        return 0

    try:
        from calmesh.jobs.queue import get_job_queue
        from calmesh.sync.calendars import list_calendars

        calendars = await list_calendars(enabled_only=True)
        queue = get_job_queue()

        queued = sum(1 for calendar in calendars if queue.enqueue(calendar.id))
        logger.info(f"Periodic sync queued {queued} of {len(calendars)} calendars")
        return queued

    finally:
        await release_job_lock("periodic_sync")


async def refresh_expiring_tokens() -> None:
    """Proactively refresh tokens that will expire within the hour."""
    from calmesh.auth.google import get_token_vault

    refreshed = await get_token_vault().refresh_expiring_tokens(within=timedelta(hours=1))
    if refreshed:
        logger.info(f"Refreshed {refreshed} expiring tokens")


async def acquire_job_lock(job_name: str, timeout_minutes: int = 30) -> bool:
    """
    Acquire a lock for a job.

    Returns True if lock acquired, False if job is already running.
    """
    db = await get_database()
    now = utcnow()
    cutoff = format_ts(now - timedelta(minutes=timeout_minutes))

    # First, try to clean up stale locks
    await db.execute(
        """DELETE FROM job_locks WHERE job_name = ? AND locked_at < ?""",
        (job_name, cutoff)
    )
    await db.commit()

    try:
        await db.execute(
            """INSERT INTO job_locks (job_name, locked_at, locked_by)
               VALUES (?, ?, ?)""",
            (job_name, format_ts(now), "worker")
        )
        await db.commit()
        return True
    except sqlite3.IntegrityError:
        # Lock already held
        return False


async def release_job_lock(job_name: str) -> None:
    """Release a job lock."""
    db = await get_database()
    await db.execute("DELETE FROM job_locks WHERE job_name = ?", (job_name,))
    await db.commit()
