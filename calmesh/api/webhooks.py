"""Webhook receiver and watch channel management for Google Calendar push notifications."""

import hmac
import logging
import secrets
import uuid
from datetime import datetime, timedelta
from typing import Optional

import httpx
from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from calmesh.api.dependencies import get_queue
from calmesh.config import get_settings
from calmesh.database import format_ts, get_database, new_id, utcnow
from calmesh.errors import ExternalApiError
from calmesh.jobs.queue import SyncJobQueue
from calmesh.models import Calendar
from calmesh.utils.rate_limit import limiter, webhook_rate_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

GOOGLE_CALENDAR_API = "https://www.googleapis.com/calendar/v3"
CHANNEL_LIFETIME = timedelta(days=6)


@router.post("/google-calendar")
@limiter.limit(webhook_rate_limit)
async def receive_google_calendar_webhook(
    request: Request,
    queue: SyncJobQueue = Depends(get_queue),
    x_goog_channel_id: str = Header(None, alias="X-Goog-Channel-ID"),
    x_goog_channel_token: str = Header(None, alias="X-Goog-Channel-Token"),
    x_goog_resource_id: str = Header(None, alias="X-Goog-Resource-ID"),
    x_goog_resource_state: str = Header(None, alias="X-Goog-Resource-State"),
):
    """
    Receive push notifications from Google Calendar.

    The notification carries no event data; it only queues a sync of the
    calendar the channel watches. Unknown or stale channels still get a
    200 so Google stops retrying.
    """
    if not x_goog_channel_id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Missing channel ID"
        )

    logger.info(
        f"Webhook received: channel={x_goog_channel_id}, "
        f"resource={x_goog_resource_id}, state={x_goog_resource_state}"
    )

    # Sent once when the channel is first registered
    if x_goog_resource_state == "sync":
        return {"status": "ok"}

    db = await get_database()
    cursor = await db.execute(
        "SELECT * FROM watch_channels WHERE channel_id = ?",
        (x_goog_channel_id,)
    )
    channel = await cursor.fetchone()

    if not channel:
        logger.warning(f"Unknown webhook channel: {x_goog_channel_id}")
        return {"status": "ok", "message": "Unknown channel"}

    stored_token = channel["token"] or ""
    if stored_token and not hmac.compare_digest(stored_token, x_goog_channel_token or ""):
        logger.warning(f"Webhook token mismatch for channel {x_goog_channel_id}")
        return {"status": "ok"}

    if x_goog_resource_id and x_goog_resource_id != channel["resource_id"]:
        logger.warning(
            f"Webhook resource mismatch for channel {x_goog_channel_id}: "
            f"expected={channel['resource_id']} got={x_goog_resource_id}"
        )
        return {"status": "ok", "message": "Resource mismatch"}

    if datetime.fromisoformat(channel["expiration"]) < utcnow():
        logger.warning(f"Expired webhook channel: {x_goog_channel_id}, cleaning up")
        await db.execute(
            "DELETE FROM watch_channels WHERE channel_id = ?",
            (x_goog_channel_id,)
        )
        await db.commit()
        return {"status": "ok", "message": "Channel expired and removed"}

    queued = queue.enqueue(channel["calendar_id"])
    logger.info(f"Sync queued for calendar {channel['calendar_id']} (queued={queued})")
    return {"status": "ok"}


async def register_watch_channel(calendar: Calendar, access_token: str) -> dict:
    """Ask Google to push change notifications for a calendar and record the channel."""
    settings = get_settings()
    channel_id = str(uuid.uuid4())
    channel_token = secrets.token_urlsafe(32)
    webhook_url = f"{settings.public_url}/api/webhooks/google-calendar"

    # Google caps channels at 7 days
    expiration = utcnow() + CHANNEL_LIFETIME

    body = {
        "id": channel_id,
        "type": "web_hook",
        "address": webhook_url,
        "expiration": str(int(expiration.timestamp() * 1000)),
        "token": channel_token,
    }

    async with httpx.AsyncClient() as client:
        response = await client.post(
            f"{GOOGLE_CALENDAR_API}/calendars/{calendar.external_calendar_id}/events/watch",
            headers={"Authorization": f"Bearer {access_token}"},
            json=body,
        )

    if response.status_code != 200:
        logger.error(f"Failed to register watch channel: {response.text}")
        raise ExternalApiError(f"watch registration failed: {response.text}", status=response.status_code)

    result = response.json()

    db = await get_database()
    await db.execute(
        """INSERT INTO watch_channels
           (id, calendar_id, channel_id, resource_id, token, expiration, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (
            new_id(),
            calendar.id,
            channel_id,
            result["resourceId"],
            channel_token,
            format_ts(expiration),
            format_ts(utcnow()),
        )
    )
    await db.commit()

    logger.info(f"Registered watch channel {channel_id} for calendar {calendar.id}")

    return {
        "channel_id": channel_id,
        "resource_id": result["resourceId"],
        "expiration": format_ts(expiration),
    }


async def stop_watch_channel(channel_id: str, resource_id: str, access_token: Optional[str]) -> None:
    """Stop a channel at Google (when a token is available) and forget it locally."""
    if access_token:
        async with httpx.AsyncClient() as client:
            response = await client.post(
                f"{GOOGLE_CALENDAR_API}/channels/stop",
                headers={"Authorization": f"Bearer {access_token}"},
                json={"id": channel_id, "resourceId": resource_id},
            )

        # 404 means the channel is already gone
        if response.status_code not in (200, 204, 404):
            logger.warning(f"Failed to stop watch channel {channel_id}: {response.text}")

    db = await get_database()
    await db.execute("DELETE FROM watch_channels WHERE channel_id = ?", (channel_id,))
    await db.commit()

    logger.info(f"Stopped watch channel {channel_id}")
