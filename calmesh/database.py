"""Database connection and schema management."""

import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

import aiosqlite

from calmesh.config import get_settings

logger = logging.getLogger(__name__)

# Global database connection
_db_connection: Optional[aiosqlite.Connection] = None
_db_lock = asyncio.Lock()


SCHEMA = """
-- Connected Google accounts (tokens encrypted at rest)
CREATE TABLE IF NOT EXISTS accounts (
    id TEXT PRIMARY KEY,
    email TEXT NOT NULL UNIQUE,
    access_token_encrypted BLOB,
    refresh_token_encrypted BLOB,
    token_expires_at TIMESTAMP,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP
);

-- Sync configuration per external calendar
CREATE TABLE IF NOT EXISTS calendars (
    id TEXT PRIMARY KEY,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    external_calendar_id TEXT NOT NULL,
    name TEXT,
    sync_enabled BOOLEAN NOT NULL DEFAULT TRUE,
    sync_direction TEXT NOT NULL DEFAULT 'bidirectional',
    privacy_mode TEXT NOT NULL DEFAULT 'detail',
    last_sync_cursor TIMESTAMP,
    created_at TIMESTAMP NOT NULL,
    updated_at TIMESTAMP,
    UNIQUE(account_id, external_calendar_id)
);

-- Provider-agnostic events
CREATE TABLE IF NOT EXISTS canonical_events (
    id TEXT PRIMARY KEY,
    title TEXT,
    start_at TIMESTAMP NOT NULL,
    end_at TIMESTAMP NOT NULL,
    timezone TEXT NOT NULL DEFAULT 'UTC',
    location TEXT,
    description TEXT,
    all_day BOOLEAN NOT NULL DEFAULT FALSE,
    last_modified_at TIMESTAMP NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_canonical_events_time
    ON canonical_events(start_at, end_at);

-- One row per external copy of a canonical event
CREATE TABLE IF NOT EXISTS event_links (
    id TEXT PRIMARY KEY,
    canonical_event_id TEXT NOT NULL REFERENCES canonical_events(id) ON DELETE CASCADE,
    account_id TEXT NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
    calendar_id TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
    external_event_id TEXT,
    etag TEXT,
    content_hash TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    last_synced_at TIMESTAMP NOT NULL,
    last_sync_operation_id TEXT,
    origin_account_id TEXT REFERENCES accounts(id) ON DELETE SET NULL,
    created_at TIMESTAMP NOT NULL,
    UNIQUE(account_id, external_event_id)
);

CREATE INDEX IF NOT EXISTS idx_event_links_canonical ON event_links(canonical_event_id);
CREATE INDEX IF NOT EXISTS idx_event_links_calendar ON event_links(calendar_id);

-- Undirected propagation permissions between calendars
CREATE TABLE IF NOT EXISTS sync_connections (
    id TEXT PRIMARY KEY,
    calendar_id_1 TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
    calendar_id_2 TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
    created_at TIMESTAMP NOT NULL,
    CHECK (calendar_id_1 < calendar_id_2),
    UNIQUE(calendar_id_1, calendar_id_2)
);

-- Append-only audit log
CREATE TABLE IF NOT EXISTS sync_log (
    id INTEGER PRIMARY KEY,
    timestamp TIMESTAMP NOT NULL,
    operation TEXT NOT NULL,
    from_account_id TEXT,
    to_account_id TEXT,
    event_id TEXT,
    result TEXT NOT NULL,
    error TEXT,
    metadata TEXT
);

CREATE INDEX IF NOT EXISTS idx_sync_log_time ON sync_log(timestamp);

-- Push notification channels
CREATE TABLE IF NOT EXISTS watch_channels (
    id TEXT PRIMARY KEY,
    calendar_id TEXT NOT NULL REFERENCES calendars(id) ON DELETE CASCADE,
    channel_id TEXT NOT NULL UNIQUE,
    resource_id TEXT NOT NULL,
    token TEXT NOT NULL DEFAULT '',
    expiration TIMESTAMP NOT NULL,
    created_at TIMESTAMP NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_watch_expiration ON watch_channels(expiration);

-- Job locking
CREATE TABLE IF NOT EXISTS job_locks (
    job_name TEXT PRIMARY KEY,
    locked_at TIMESTAMP,
    locked_by TEXT
);
"""


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def format_ts(value: Optional[datetime]) -> Optional[str]:
    """Render a datetime as a fixed-width UTC ISO string so stored values sort lexically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="microseconds")


def new_id() -> str:
    """Generate a new opaque record identifier."""
    return uuid.uuid4().hex


async def get_database() -> aiosqlite.Connection:
    """Get the database connection, creating it if necessary."""
    global _db_connection

    async with _db_lock:
        if _db_connection is None:
            settings = get_settings()
            _db_connection = await aiosqlite.connect(settings.database_path)
            _db_connection.row_factory = aiosqlite.Row
            await _db_connection.execute("PRAGMA foreign_keys = ON")
            await _db_connection.execute("PRAGMA journal_mode = WAL")
            await init_schema(_db_connection)
        return _db_connection


async def init_schema(db: aiosqlite.Connection) -> None:
    """Initialize database schema."""
    await db.executescript(SCHEMA)
    await db.commit()
    logger.info("Database schema initialized")


async def close_database() -> None:
    """Close the database connection."""
    global _db_connection

    async with _db_lock:
        if _db_connection is not None:
            await _db_connection.close()
            _db_connection = None
            logger.info("Database connection closed")


@asynccontextmanager
async def get_db() -> AsyncGenerator[aiosqlite.Connection, None]:
    """Context manager for getting database connection."""
    db = await get_database()
    try:
        yield db
    finally:
        pass  # Connection is managed globally


async def log_sync(
    operation: str,
    result: str,
    event_id: Optional[str] = None,
    from_account_id: Optional[str] = None,
    to_account_id: Optional[str] = None,
    error: Optional[str] = None,
    metadata: Optional[dict[str, Any]] = None,
) -> None:
    """Append an entry to the sync log."""
    db = await get_database()
    await db.execute(
        """INSERT INTO sync_log
           (timestamp, operation, from_account_id, to_account_id, event_id, result, error, metadata)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            format_ts(utcnow()),
            operation,
            from_account_id,
            to_account_id,
            event_id,
            result,
            error,
            json.dumps(metadata, default=str) if metadata is not None else None,
        ),
    )
    await db.commit()


async def list_sync_log(
    limit: int = 50,
    offset: int = 0,
    operation: Optional[str] = None,
    result: Optional[str] = None,
) -> tuple[list[dict], int]:
    """Read sync log entries, newest first, with the total matching count."""
    db = await get_database()

    query = "FROM sync_log WHERE 1 = 1"
    params: list[Any] = []
    if operation:
        query += " AND operation = ?"
        params.append(operation)
    if result:
        query += " AND result = ?"
        params.append(result)

    cursor = await db.execute(f"SELECT COUNT(*) {query}", params)
    total = (await cursor.fetchone())[0]

    cursor = await db.execute(
        f"SELECT * {query} ORDER BY id DESC LIMIT ? OFFSET ?",
        [*params, limit, offset],
    )
    rows = await cursor.fetchall()
    return [dict(row) for row in rows], total
