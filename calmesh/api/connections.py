"""Sync connection API endpoints."""

import logging

from fastapi import APIRouter, status
from pydantic import BaseModel

from calmesh.errors import ValidationError
from calmesh.models import SyncConnection
from calmesh.sync.calendars import get_calendar
from calmesh.sync.connections import create_connection, delete_connection, list_connections

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/sync-connections", tags=["sync-connections"])


class CreateConnectionRequest(BaseModel):
    calendar_id_1: str
    calendar_id_2: str


class ConnectionsResponse(BaseModel):
    connections: list[SyncConnection]


@router.get("", response_model=ConnectionsResponse)
async def get_connections():
    return ConnectionsResponse(connections=await list_connections())


@router.post("", response_model=SyncConnection, status_code=status.HTTP_201_CREATED)
async def post_connection(request: CreateConnectionRequest):
    """Allow propagation between two calendars."""
    for calendar_id in (request.calendar_id_1, request.calendar_id_2):
        if calendar_id and await get_calendar(calendar_id) is None:
            raise ValidationError(f"Calendar not found: {calendar_id}")

    return await create_connection(request.calendar_id_1, request.calendar_id_2)


@router.delete("/{connection_id}")
async def remove_connection(connection_id: str):
    await delete_connection(connection_id)
    return {"message": "Sync connection deleted"}
