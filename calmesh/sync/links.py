"""Event link registry: one row per external copy of a canonical event."""

import logging
from typing import Optional

from calmesh.database import format_ts, get_database, new_id, utcnow
from calmesh.errors import NotFoundError
from calmesh.models import EventLink, LinkStatus, LinkUpdate

logger = logging.getLogger(__name__)

_UPDATABLE_COLUMNS = (
    "external_event_id",
    "etag",
    "content_hash",
    "status",
    "last_synced_at",
    "last_sync_operation_id",
)


def _row_to_link(row) -> EventLink:
    return EventLink(**dict(row))


def _db_value(column: str, value):
    if column == "external_event_id":
        # Pending links have no external id yet; NULL keeps them out of the unique index
        return value or None
    if column == "last_synced_at":
        return format_ts(value)
    if column == "status" and value is not None:
        return LinkStatus(value).value
    return value


async def create_link(
    canonical_event_id: str,
    account_id: str,
    calendar_id: str,
    external_event_id: str = "",
    etag: str = "",
    content_hash: Optional[str] = None,
    status: LinkStatus = LinkStatus.ACTIVE,
    last_sync_operation_id: Optional[str] = None,
    origin_account_id: Optional[str] = None,
) -> EventLink:
    """Create a link; an empty external id marks a copy not yet materialized."""
    db = await get_database()
    now = utcnow()
    link = EventLink(
        id=new_id(),
        canonical_event_id=canonical_event_id,
        account_id=account_id,
        calendar_id=calendar_id,
        external_event_id=external_event_id,
        etag=etag,
        content_hash=content_hash,
        status=status,
        last_synced_at=now,
        last_sync_operation_id=last_sync_operation_id,
        origin_account_id=origin_account_id,
        created_at=now,
    )
    await db.execute(
        """INSERT INTO event_links
           (id, canonical_event_id, account_id, calendar_id, external_event_id, etag,
            content_hash, status, last_synced_at, last_sync_operation_id,
            origin_account_id, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            link.id,
            link.canonical_event_id,
            link.account_id,
            link.calendar_id,
            link.external_event_id or None,
            link.etag,
            link.content_hash,
            link.status.value,
            format_ts(now),
            link.last_sync_operation_id,
            link.origin_account_id,
            format_ts(now),
        ),
    )
    await db.commit()
    return link


async def get_link(link_id: str) -> Optional[EventLink]:
    db = await get_database()
    cursor = await db.execute("SELECT * FROM event_links WHERE id = ?", (link_id,))
    row = await cursor.fetchone()
    return _row_to_link(row) if row else None


async def require_link(link_id: str) -> EventLink:
    link = await get_link(link_id)
    if link is None:
        raise NotFoundError("Event link", link_id)
    return link


async def update_link(link_id: str, update: LinkUpdate) -> EventLink:
    """Write the explicitly set fields of an update, leaving the rest unchanged."""
    changes = {k: v for k, v in update.changes().items() if k in _UPDATABLE_COLUMNS}
    if changes:
        assignments = ", ".join(f"{column} = ?" for column in changes)
        params = [_db_value(column, value) for column, value in changes.items()]

        db = await get_database()
        cursor = await db.execute(
            f"UPDATE event_links SET {assignments} WHERE id = ?",
            (*params, link_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            raise NotFoundError("Event link", link_id)

    return await require_link(link_id)


async def list_links_for_canonical(canonical_id: str) -> list[EventLink]:
    """List every link of a canonical event in creation order."""
    db = await get_database()
    cursor = await db.execute(
        """SELECT * FROM event_links
           WHERE canonical_event_id = ?
           ORDER BY created_at, rowid""",
        (canonical_id,),
    )
    rows = await cursor.fetchall()
    return [_row_to_link(row) for row in rows]


async def list_active_links() -> list[EventLink]:
    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM event_links WHERE status = ? ORDER BY created_at, rowid",
        (LinkStatus.ACTIVE.value,),
    )
    rows = await cursor.fetchall()
    return [_row_to_link(row) for row in rows]


async def find_link_by_external_id(account_id: str, external_event_id: str) -> Optional[EventLink]:
    if not external_event_id:
        return None

    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM event_links WHERE account_id = ? AND external_event_id = ?",
        (account_id, external_event_id),
    )
    row = await cursor.fetchone()
    return _row_to_link(row) if row else None


async def upsert_link(
    canonical_event_id: str,
    account_id: str,
    calendar_id: str,
    external_event_id: str,
    etag: Optional[str] = None,
    content_hash: Optional[str] = None,
    status: Optional[LinkStatus] = None,
    last_sync_operation_id: Optional[str] = None,
    origin_account_id: Optional[str] = None,
) -> EventLink:
    """
    Create or update the link keyed by (account, external event id).

    On update the etag is only replaced when one is given (pass "" to clear
    it); hash, status and operation token are always written. A new link
    defaults to active.
    """
    existing = await find_link_by_external_id(account_id, external_event_id)

    if existing is None:
        return await create_link(
            canonical_event_id=canonical_event_id,
            account_id=account_id,
            calendar_id=calendar_id,
            external_event_id=external_event_id,
            etag=etag or "",
            content_hash=content_hash,
            status=status or LinkStatus.ACTIVE,
            last_sync_operation_id=last_sync_operation_id,
            origin_account_id=origin_account_id,
        )

    update = LinkUpdate(
        content_hash=content_hash,
        status=status or existing.status,
        last_sync_operation_id=last_sync_operation_id,
        last_synced_at=utcnow(),
    )
    if etag is not None:
        update.etag = etag
    return await update_link(existing.id, update)


async def delete_link(link_id: str) -> bool:
    """
    Hard delete a link.

    When no other active link still references its canonical event, the
    canonical event is deleted too. Returns whether that happened.
    """
    link = await require_link(link_id)

    db = await get_database()
    await db.execute("DELETE FROM event_links WHERE id = ?", (link_id,))

    cursor = await db.execute(
        "SELECT COUNT(*) FROM event_links WHERE canonical_event_id = ? AND status = ?",
        (link.canonical_event_id, LinkStatus.ACTIVE.value),
    )
    remaining = (await cursor.fetchone())[0]

    orphaned = remaining == 0
    if orphaned:
        await db.execute("DELETE FROM canonical_events WHERE id = ?", (link.canonical_event_id,))
        logger.info(f"Removed orphaned canonical event {link.canonical_event_id}")

    await db.commit()
    return orphaned
