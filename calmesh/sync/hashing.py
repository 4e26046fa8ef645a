"""Content hashing for provider events."""

import hashlib
import json
from datetime import datetime, timezone
from typing import Any, Optional


def _normalize_time(value: Optional[dict]) -> dict:
    """Reduce a start/end block to a comparable form."""
    if not value:
        return {}

    if value.get("date"):
        return {"date": value["date"]}

    raw = value.get("dateTime")
    if not raw:
        return {}

    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return {"dateTime": raw}

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return {"dateTime": parsed.astimezone(timezone.utc).isoformat()}


def _text(event: dict, key: str) -> str:
    value = event.get(key)
    return value.strip() if isinstance(value, str) else ""


def compute_event_hash(event: dict[str, Any]) -> str:
    """
    Compute a SHA-256 fingerprint of the user-visible content of an event.

    Covers start, end, time zone, summary, location and description. Two
    payloads that differ only in server-side fields (etag, updated, ids)
    hash the same.
    """
    start = event.get("start") or {}
    normalized = {
        "start": _normalize_time(start),
        "end": _normalize_time(event.get("end")),
        "timezone": start.get("timeZone") or "UTC",
        "summary": _text(event, "summary"),
        "location": _text(event, "location"),
        "description": _text(event, "description"),
    }
    payload = json.dumps(normalized, sort_keys=True)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
