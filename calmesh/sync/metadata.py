"""Sync metadata carried in private extended properties of provider events."""

from typing import Any, Optional

from pydantic import BaseModel

from calmesh.config import get_settings

CANONICAL_ID_KEY = "syncCanonicalId"
OPERATION_ID_KEY = "syncOpId"
ENGINE_ID_KEY = "syncEngineId"


class SyncMetadata(BaseModel):
    canonical_id: Optional[str] = None
    operation_id: Optional[str] = None


def _private_properties(event: dict[str, Any]) -> dict:
    ext_props = event.get("extendedProperties") or {}
    return ext_props.get("private") or {}


def read_sync_metadata(event: dict[str, Any]) -> SyncMetadata:
    """
    Read the canonical id and operation token stamped on an event.

    Properties written by another engine are ignored so foreign events
    cannot redirect matching.
    """
    private = _private_properties(event)
    if private.get(ENGINE_ID_KEY) != get_settings().sync_engine_id:
        return SyncMetadata()

    return SyncMetadata(
        canonical_id=private.get(CANONICAL_ID_KEY) or None,
        operation_id=private.get(OPERATION_ID_KEY) or None,
    )


def build_private_properties(canonical_id: str, operation_id: Optional[str] = None) -> dict[str, str]:
    """Build the private extended properties for an outgoing payload."""
    private = {
        CANONICAL_ID_KEY: canonical_id,
        ENGINE_ID_KEY: get_settings().sync_engine_id,
    }
    if operation_id:
        private[OPERATION_ID_KEY] = operation_id
    return private
