"""Event link API endpoints."""

import logging

from fastapi import APIRouter

from calmesh.sync.links import delete_link

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/event-links", tags=["event-links"])


@router.delete("/{link_id}")
async def unlink_event(link_id: str):
    """Remove a link; its canonical event goes too once no active link remains."""
    canonical_deleted = await delete_link(link_id)
    logger.info(f"Unlinked event link {link_id} (canonical_deleted={canonical_deleted})")
    return {"deleted": True, "canonical_deleted": canonical_deleted}
