"""Canonical event store."""

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from calmesh.database import format_ts, get_database, new_id, utcnow
from calmesh.errors import NotFoundError, ValidationError
from calmesh.models import CanonicalEvent, CanonicalEventUpdate

logger = logging.getLogger(__name__)


def parse_event_time(value: Optional[dict]) -> tuple[Optional[datetime], bool]:
    """
    Parse a provider start/end block.

    Returns the instant (midnight UTC for all-day dates) and whether the
    block was an all-day date.
    """
    if not value:
        return None, False

    if value.get("date"):
        day = datetime.fromisoformat(value["date"])
        return day.replace(tzinfo=timezone.utc), True

    raw = value.get("dateTime")
    if not raw:
        return None, False

    parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc), False


def fields_from_event(event: dict[str, Any]) -> dict[str, Any]:
    """Map a provider event onto canonical fields; times are required."""
    start = event.get("start") or {}
    start_at, all_day = parse_event_time(start)
    end_at, _ = parse_event_time(event.get("end"))

    if start_at is None or end_at is None:
        raise ValidationError(f"Event {event.get('id')} is missing start or end time")

    return {
        "title": event.get("summary"),
        "start_at": start_at,
        "end_at": end_at,
        "timezone": start.get("timeZone") or "UTC",
        "location": event.get("location"),
        "description": event.get("description"),
        "all_day": all_day,
    }


def _check_time_order(start_at: datetime, end_at: datetime) -> None:
    if start_at > end_at:
        raise ValidationError(
            f"Event start {start_at.isoformat()} is after end {end_at.isoformat()}"
        )


def _row_to_event(row) -> CanonicalEvent:
    return CanonicalEvent(**dict(row))


async def create_canonical_event(
    start_at: datetime,
    end_at: datetime,
    title: Optional[str] = None,
    timezone: str = "UTC",
    location: Optional[str] = None,
    description: Optional[str] = None,
    all_day: bool = False,
) -> CanonicalEvent:
    """Create a canonical event."""
    _check_time_order(start_at, end_at)

    db = await get_database()
    now = utcnow()
    event = CanonicalEvent(
        id=new_id(),
        title=title,
        start_at=start_at,
        end_at=end_at,
        timezone=timezone or "UTC",
        location=location,
        description=description,
        all_day=all_day,
        last_modified_at=now,
        created_at=now,
    )
    await db.execute(
        """INSERT INTO canonical_events
           (id, title, start_at, end_at, timezone, location, description, all_day,
            last_modified_at, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            event.id,
            event.title,
            format_ts(event.start_at),
            format_ts(event.end_at),
            event.timezone,
            event.location,
            event.description,
            event.all_day,
            format_ts(now),
            format_ts(now),
        ),
    )
    await db.commit()

    logger.debug(f"Created canonical event {event.id}")
    return event


async def get_canonical_event(canonical_id: str) -> Optional[CanonicalEvent]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM canonical_events WHERE id = ?", (canonical_id,))
    row = await cursor.fetchone()
    return _row_to_event(row) if row else None


async def require_canonical_event(canonical_id: str) -> CanonicalEvent:
    """Get a canonical event or raise NotFoundError."""
    event = await get_canonical_event(canonical_id)
    if event is None:
        raise NotFoundError("Canonical event", canonical_id)
    return event


async def update_canonical_event(canonical_id: str, update: CanonicalEventUpdate) -> CanonicalEvent:
    """Apply the explicitly set fields of an update; last_modified_at always advances."""
    current = await require_canonical_event(canonical_id)
    changes = update.changes()

    if changes.get("timezone") is None and "timezone" in changes:
        changes["timezone"] = ""
    if changes.get("all_day") is None and "all_day" in changes:
        changes["all_day"] = False
    for required in ("start_at", "end_at"):
        if required in changes and changes[required] is None:
            raise ValidationError(f"Canonical event {required} cannot be cleared")

    merged = current.model_copy(update=changes)
    _check_time_order(merged.start_at, merged.end_at)
    merged.last_modified_at = utcnow()

    db = await get_database()
    await db.execute(
        """UPDATE canonical_events
           SET title = ?, start_at = ?, end_at = ?, timezone = ?, location = ?,
               description = ?, all_day = ?, last_modified_at = ?
           WHERE id = ?""",
        (
            merged.title,
            format_ts(merged.start_at),
            format_ts(merged.end_at),
            merged.timezone,
            merged.location,
            merged.description,
            merged.all_day,
            format_ts(merged.last_modified_at),
            canonical_id,
        ),
    )
    await db.commit()
    return merged


async def delete_canonical_event(canonical_id: str) -> bool:
    db = await get_database()
    cursor = await db.execute("DELETE FROM canonical_events WHERE id = ?", (canonical_id,))
    await db.commit()
    return cursor.rowcount > 0


async def list_canonical_events_near(
    calendar_id: str,
    start_from: datetime,
    start_to: datetime,
) -> list[CanonicalEvent]:
    """List canonical events linked to a calendar whose start falls in a window."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT DISTINCT ce.* FROM canonical_events ce
           JOIN event_links el ON el.canonical_event_id = ce.id
           WHERE el.calendar_id = ?
             AND ce.start_at >= ? AND ce.start_at <= ?
           ORDER BY ce.start_at""",
        (calendar_id, format_ts(start_from), format_ts(start_to)),
    )
    rows = await cursor.fetchall()
    return [_row_to_event(row) for row in rows]
