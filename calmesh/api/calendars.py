"""Calendar configuration API endpoints."""

import logging
from typing import Optional

from fastapi import APIRouter, status
from pydantic import BaseModel

from calmesh.auth.google import get_account
from calmesh.config import get_settings
from calmesh.errors import NotFoundError
from calmesh.models import Calendar, CalendarSettingsUpdate, PrivacyMode, SyncDirection
from calmesh.sync.calendars import (
    create_calendar,
    list_calendars,
    require_calendar,
    update_calendar_settings,
)
from calmesh.utils.tasks import create_background_task

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/calendars", tags=["calendars"])


class RegisterCalendarRequest(BaseModel):
    account_id: str
    external_calendar_id: str
    name: Optional[str] = None
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    privacy_mode: PrivacyMode = PrivacyMode.DETAIL


@router.get("", response_model=list[Calendar])
async def get_calendars(enabled_only: bool = False):
    return await list_calendars(enabled_only=enabled_only)


@router.post("", response_model=Calendar, status_code=status.HTTP_201_CREATED)
async def register_calendar(request: RegisterCalendarRequest):
    """Register an external calendar of a connected account."""
    if await get_account(request.account_id) is None:
        raise NotFoundError("Account", request.account_id)

    calendar = await create_calendar(
        account_id=request.account_id,
        external_calendar_id=request.external_calendar_id,
        name=request.name,
        sync_direction=request.sync_direction,
        privacy_mode=request.privacy_mode,
    )

    if get_settings().enable_webhooks:
        create_background_task(
            _register_channel(calendar),
            f"register_watch_channel_{calendar.id}",
        )

    return calendar


async def _register_channel(calendar: Calendar) -> None:
    from calmesh.api.webhooks import register_watch_channel
    from calmesh.auth.google import get_token_vault

    access_token = await get_token_vault().get_access_token(calendar.account_id)
    await register_watch_channel(calendar, access_token)


@router.get("/{calendar_id}", response_model=Calendar)
async def get_calendar_detail(calendar_id: str):
    return await require_calendar(calendar_id)


@router.patch("/{calendar_id}", response_model=Calendar)
async def patch_calendar(calendar_id: str, update: CalendarSettingsUpdate):
    """Change sync settings (enabled, direction, privacy, name)."""
    return await update_calendar_settings(calendar_id, update)
