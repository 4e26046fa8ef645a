"""Conflict review and resolution API endpoints."""

import logging
from typing import Any

from fastapi import APIRouter, Body, Depends

from calmesh.api.dependencies import get_conflict_resolver
from calmesh.errors import NotFoundError
from calmesh.models import Conflict, PropagationResult, parse_resolution
from calmesh.sync.conflicts import ConflictResolver

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/conflicts", tags=["conflicts"])


@router.get("", response_model=list[Conflict])
async def list_conflicts(resolver: ConflictResolver = Depends(get_conflict_resolver)):
    return await resolver.detect_conflicts()


@router.get("/{canonical_id}", response_model=Conflict)
async def get_conflict(canonical_id: str, resolver: ConflictResolver = Depends(get_conflict_resolver)):
    conflict = await resolver.get_conflict(canonical_id)
    if conflict is None:
        raise NotFoundError("Conflict", canonical_id)
    return conflict


@router.post("/{canonical_id}/resolve", response_model=PropagationResult)
async def resolve_conflict(
    canonical_id: str,
    body: dict[str, Any] = Body(...),
    resolver: ConflictResolver = Depends(get_conflict_resolver),
):
    """
    Resolve a conflict.

    Body is either {"strategy": "adopt-A" | "adopt-B", "adopt_link_id": ...}
    or {"strategy": "manual", "manual_data": {...}}.
    """
    resolution = parse_resolution(body)
    return await resolver.resolve_conflict(canonical_id, resolution)
