"""Sync control and log API endpoints."""

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel

from calmesh.api.dependencies import get_queue
from calmesh.database import list_sync_log
from calmesh.jobs.queue import SyncJobQueue
from calmesh.sync.calendars import require_calendar

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync", tags=["sync"])


class SyncTriggerResponse(BaseModel):
    calendar_id: str
    status: str


class SyncLogEntry(BaseModel):
    id: int
    timestamp: str
    operation: str
    from_account_id: Optional[str] = None
    to_account_id: Optional[str] = None
    event_id: Optional[str] = None
    result: str
    error: Optional[str] = None
    metadata: Optional[dict[str, Any]] = None


class SyncLogResponse(BaseModel):
    entries: list[SyncLogEntry]
    total: int
    page: int
    page_size: int


@router.post(
    "/calendars/{calendar_id}",
    response_model=SyncTriggerResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def trigger_calendar_sync(calendar_id: str, queue: SyncJobQueue = Depends(get_queue)):
    """Queue a sync for one calendar."""
    await require_calendar(calendar_id)

    queued = queue.enqueue(calendar_id)
    logger.info(f"Manual sync requested for calendar {calendar_id} (queued={queued})")
    return SyncTriggerResponse(calendar_id=calendar_id, status="queued" if queued else "already_queued")


@router.get("/log", response_model=SyncLogResponse)
async def get_sync_log(
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1, le=500),
    operation: Optional[str] = None,
    result: Optional[str] = None,
):
    """Read the sync log, newest first."""
    rows, total = await list_sync_log(
        limit=page_size,
        offset=(page - 1) * page_size,
        operation=operation,
        result=result,
    )

    entries = []
    for row in rows:
        if row["metadata"]:
            row["metadata"] = json.loads(row["metadata"])
        entries.append(SyncLogEntry(**row))

    return SyncLogResponse(entries=entries, total=total, page=page, page_size=page_size)
