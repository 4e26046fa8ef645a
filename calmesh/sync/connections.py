"""Sync connection registry: undirected propagation permissions between calendars."""

import logging
from typing import Optional

from calmesh.database import format_ts, get_database, new_id, utcnow
from calmesh.errors import NotFoundError, ValidationError
from calmesh.models import SyncConnection

logger = logging.getLogger(__name__)


def _row_to_connection(row) -> SyncConnection:
    return SyncConnection(**dict(row))


async def create_connection(calendar_id_a: str, calendar_id_b: str) -> SyncConnection:
    """
    Connect two calendars.

    The pair is stored in sorted order, so connecting (B, A) after (A, B)
    returns the existing row instead of creating a second one.
    """
    if not calendar_id_a or not calendar_id_b:
        raise ValidationError("Both calendar ids are required")
    if calendar_id_a == calendar_id_b:
        raise ValidationError("Cannot connect a calendar to itself")

    id_1, id_2 = sorted((calendar_id_a, calendar_id_b))

    db = await get_database()
    await db.execute(
        """INSERT INTO sync_connections (id, calendar_id_1, calendar_id_2, created_at)
           VALUES (?, ?, ?, ?)
           ON CONFLICT (calendar_id_1, calendar_id_2) DO NOTHING""",
        (new_id(), id_1, id_2, format_ts(utcnow())),
    )
    await db.commit()

    cursor = await db.execute(
        "SELECT * FROM sync_connections WHERE calendar_id_1 = ? AND calendar_id_2 = ?",
        (id_1, id_2),
    )
    row = await cursor.fetchone()
    logger.info(f"Connected calendars {id_1} and {id_2}")
    return _row_to_connection(row)


async def get_connection(connection_id: str) -> Optional[SyncConnection]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM sync_connections WHERE id = ?", (connection_id,))
    row = await cursor.fetchone()
    return _row_to_connection(row) if row else None


async def list_connections() -> list[SyncConnection]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM sync_connections ORDER BY created_at DESC, rowid DESC")
    rows = await cursor.fetchall()
    return [_row_to_connection(row) for row in rows]


async def list_connections_for_calendar(calendar_id: str) -> list[SyncConnection]:
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM sync_connections
           WHERE calendar_id_1 = ? OR calendar_id_2 = ?
           ORDER BY created_at DESC, rowid DESC""",
        (calendar_id, calendar_id),
    )
    rows = await cursor.fetchall()
    return [_row_to_connection(row) for row in rows]


async def find_connected_calendar_ids(calendar_id: str) -> list[str]:
    """Return the calendars on the other end of every connection of a calendar."""
    connections = await list_connections_for_calendar(calendar_id)
    return [connection.other(calendar_id) for connection in connections]


async def delete_connection(connection_id: str) -> None:
    db = await get_database()
    cursor = await db.execute("DELETE FROM sync_connections WHERE id = ?", (connection_id,))
    await db.commit()
    if cursor.rowcount == 0:
        raise NotFoundError("Sync connection", connection_id)
    logger.info(f"Deleted sync connection {connection_id}")
