"""Calendar configuration store."""

import logging
from datetime import datetime
from typing import Optional

from calmesh.database import format_ts, get_database, new_id, utcnow
from calmesh.errors import NotFoundError
from calmesh.models import Calendar, CalendarSettingsUpdate, PrivacyMode, SyncDirection

logger = logging.getLogger(__name__)


def _row_to_calendar(row) -> Calendar:
    return Calendar(**dict(row))


async def create_calendar(
    account_id: str,
    external_calendar_id: str,
    name: Optional[str] = None,
    sync_enabled: bool = True,
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL,
    privacy_mode: PrivacyMode = PrivacyMode.DETAIL,
) -> Calendar:
    """Register an external calendar, or return the existing row for it."""
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM calendars WHERE account_id = ? AND external_calendar_id = ?",
        (account_id, external_calendar_id),
    )
    row = await cursor.fetchone()
    if row:
        return _row_to_calendar(row)

    now = utcnow()
    calendar = Calendar(
        id=new_id(),
        account_id=account_id,
        external_calendar_id=external_calendar_id,
        name=name,
        sync_enabled=sync_enabled,
        sync_direction=sync_direction,
        privacy_mode=privacy_mode,
        created_at=now,
        updated_at=now,
    )
    await db.execute(
        """INSERT INTO calendars
           (id, account_id, external_calendar_id, name, sync_enabled, sync_direction,
            privacy_mode, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            calendar.id,
            account_id,
            external_calendar_id,
            name,
            sync_enabled,
            calendar.sync_direction.value,
            calendar.privacy_mode.value,
            format_ts(now),
            format_ts(now),
        ),
    )
    await db.commit()

    logger.info(f"Registered calendar {external_calendar_id} for account {account_id}")
    return calendar


async def get_calendar(calendar_id: str) -> Optional[Calendar]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM calendars WHERE id = ?", (calendar_id,))
    row = await cursor.fetchone()
    return _row_to_calendar(row) if row else None


async def require_calendar(calendar_id: str) -> Calendar:
    calendar = await get_calendar(calendar_id)
    if calendar is None:
        raise NotFoundError("Calendar", calendar_id)
    return calendar


async def list_calendars(enabled_only: bool = False) -> list[Calendar]:
    db = await get_database()
    query = "SELECT * FROM calendars"
    if enabled_only:
        query += " WHERE sync_enabled = TRUE"
    cursor = await db.execute(query + " ORDER BY created_at, rowid")
    rows = await cursor.fetchall()
    return [_row_to_calendar(row) for row in rows]


async def update_calendar_settings(calendar_id: str, update: CalendarSettingsUpdate) -> Calendar:
    """Apply the settings that were explicitly provided."""
    changes = update.model_dump(exclude_unset=True, exclude_none=True)
    if not changes:
        return await require_calendar(calendar_id)

    for key in ("sync_direction", "privacy_mode"):
        if key in changes:
            changes[key] = changes[key].value

    assignments = ", ".join(f"{column} = ?" for column in changes)
    db = await get_database()
    cursor = await db.execute(
        f"UPDATE calendars SET {assignments}, updated_at = ? WHERE id = ?",
        (*changes.values(), format_ts(utcnow()), calendar_id),
    )
    await db.commit()
    if cursor.rowcount == 0:
        raise NotFoundError("Calendar", calendar_id)

    logger.info(f"Updated settings for calendar {calendar_id}: {sorted(changes)}")
    return await require_calendar(calendar_id)


async def set_sync_cursor(calendar_id: str, cursor_at: Optional[datetime]) -> None:
    """Record the instant up to which changes have been ingested."""
    db = await get_database()
    await db.execute(
        "UPDATE calendars SET last_sync_cursor = ?, updated_at = ? WHERE id = ?",
        (format_ts(cursor_at), format_ts(utcnow()), calendar_id),
    )
    await db.commit()


async def get_calendar_labels(calendar_id: str) -> tuple[str, str]:
    """Return (account email, calendar name) for display."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT c.name, c.external_calendar_id, a.email
           FROM calendars c JOIN accounts a ON c.account_id = a.id
           WHERE c.id = ?""",
        (calendar_id,),
    )
    row = await cursor.fetchone()
    if not row:
        return "", ""
    return row["email"], row["name"] or row["external_calendar_id"]
