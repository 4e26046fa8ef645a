"""Watch channel registration and renewal jobs."""

import logging
from datetime import timedelta

from calmesh.database import format_ts, get_database, utcnow

logger = logging.getLogger(__name__)


async def renew_expiring_channels() -> None:
    """Replace watch channels that expire within 24 hours."""
    db = await get_database()
    threshold = format_ts(utcnow() + timedelta(hours=24))

    cursor = await db.execute(
        "SELECT * FROM watch_channels WHERE expiration < ?",
        (threshold,)
    )
    expiring = await cursor.fetchall()

    if not expiring:
        logger.debug("No watch channels need renewal")
        return

    logger.info(f"Renewing {len(expiring)} expiring watch channels")

    from calmesh.api.webhooks import register_watch_channel, stop_watch_channel
    from calmesh.auth.google import get_token_vault
    from calmesh.sync.calendars import get_calendar

    vault = get_token_vault()
    for channel in expiring:
        try:
            calendar = await get_calendar(channel["calendar_id"])
            if calendar is None or not calendar.sync_enabled:
                await stop_watch_channel(channel["channel_id"], channel["resource_id"], None)
                continue

            access_token = await vault.get_access_token(calendar.account_id)
            await stop_watch_channel(channel["channel_id"], channel["resource_id"], access_token)
            await register_watch_channel(calendar, access_token)

            logger.info(f"Renewed watch channel for calendar {calendar.id}")

        except Exception as e:
            logger.error(f"Failed to renew watch channel {channel['channel_id']}: {e}")


async def register_all_channels() -> None:
    """Register a watch channel for every enabled calendar that has none."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT c.id FROM calendars c
           WHERE c.sync_enabled = TRUE
             AND NOT EXISTS (SELECT 1 FROM watch_channels wc WHERE wc.calendar_id = c.id)"""
    )
    rows = await cursor.fetchall()

    from calmesh.api.webhooks import register_watch_channel
    from calmesh.auth.google import get_token_vault
    from calmesh.sync.calendars import require_calendar

    vault = get_token_vault()
    for row in rows:
        try:
            calendar = await require_calendar(row["id"])
            access_token = await vault.get_access_token(calendar.account_id)
            await register_watch_channel(calendar, access_token)
        except Exception as e:
            logger.error(f"Failed to register watch channel for calendar {row['id']}: {e}")
