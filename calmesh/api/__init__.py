"""API endpoints module."""

from fastapi import APIRouter

from calmesh.api.calendars import router as calendars_router
from calmesh.api.conflicts import router as conflicts_router
from calmesh.api.connections import router as connections_router
from calmesh.api.links import router as links_router
from calmesh.api.sync import router as sync_router
from calmesh.api.webhooks import router as webhooks_router

api_router = APIRouter(prefix="/api")

api_router.include_router(sync_router)
api_router.include_router(calendars_router)
api_router.include_router(connections_router)
api_router.include_router(conflicts_router)
api_router.include_router(links_router)
api_router.include_router(webhooks_router)

__all__ = ["api_router"]
