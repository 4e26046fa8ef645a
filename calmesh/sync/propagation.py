"""Materialization and propagation of canonical events to linked calendars."""

import logging
from datetime import timezone
from typing import Any, Optional

from calmesh.config import Settings, get_settings
from calmesh.database import log_sync, utcnow
from calmesh.errors import EventNotFoundError
from calmesh.models import (
    Calendar,
    CanonicalEvent,
    EventLink,
    ItemError,
    LinkStatus,
    LinkUpdate,
    PrivacyMode,
    PropagationResult,
)
from calmesh.sync.calendars import get_calendar
from calmesh.sync.canonical import require_canonical_event
from calmesh.sync.connections import find_connected_calendar_ids
from calmesh.sync.google_calendar import CalendarProvider
from calmesh.sync.hashing import compute_event_hash
from calmesh.sync.links import create_link, get_link, list_links_for_canonical, update_link
from calmesh.sync.metadata import build_private_properties

logger = logging.getLogger(__name__)


def _render_time(canonical: CanonicalEvent, value, tz: str) -> dict[str, str]:
    value = value.astimezone(timezone.utc)
    if canonical.all_day:
        return {"date": value.date().isoformat()}
    return {"dateTime": value.isoformat().replace("+00:00", "Z"), "timeZone": tz}


def materialize_for_target(
    canonical: CanonicalEvent,
    calendar: Calendar,
    operation_id: Optional[str] = None,
    existing_event: Optional[dict] = None,
    settings: Optional[Settings] = None,
) -> dict[str, Any]:
    """
    Render a canonical event as a provider payload for one target calendar.

    Busy-only calendars get an opaque block with no title, description or
    location. Detail copies keep the transparency of the existing copy. The
    time zone falls back from the canonical event to the existing copy, then
    to UTC.
    """
    settings = settings or get_settings()

    tz = canonical.timezone
    if not tz and existing_event:
        tz = (existing_event.get("start") or {}).get("timeZone")
    tz = tz or "UTC"

    payload: dict[str, Any] = {
        "start": _render_time(canonical, canonical.start_at, tz),
        "end": _render_time(canonical, canonical.end_at, tz),
        "extendedProperties": {
            "private": build_private_properties(canonical.id, operation_id),
        },
    }

    if calendar.privacy_mode == PrivacyMode.BUSY_ONLY:
        payload["summary"] = settings.busy_block_title
        payload["transparency"] = "opaque"
    else:
        if existing_event and existing_event.get("transparency"):
            payload["transparency"] = existing_event["transparency"]
        payload["summary"] = canonical.title or ""
        if canonical.description:
            payload["description"] = canonical.description
        if canonical.location:
            payload["location"] = canonical.location

    return payload


class PropagationEngine:
    """Pushes canonical state out to every eligible linked copy."""

    def __init__(self, provider: CalendarProvider, settings: Optional[Settings] = None):
        self.provider = provider
        self.settings = settings or get_settings()

    async def _select_targets(
        self,
        canonical: CanonicalEvent,
        source_link: Optional[EventLink],
        origin_account_id: Optional[str],
    ) -> list[EventLink]:
        """Pick the links to write to, creating pending links on connected calendars."""
        links = await list_links_for_canonical(canonical.id)
        source_id = source_link.id if source_link else None
        targets = [
            link for link in links
            if link.id != source_id and link.status != LinkStatus.DELETED
        ]

        if source_link is None:
            return targets

        connected_ids = await find_connected_calendar_ids(source_link.calendar_id)
        if not connected_ids:
            return targets

        targets = [link for link in targets if link.calendar_id in connected_ids]

        linked_calendars = {link.calendar_id for link in links}
        for calendar_id in connected_ids:
            if calendar_id in linked_calendars:
                continue
            calendar = await get_calendar(calendar_id)
            if calendar is None or not calendar.sync_enabled:
                continue
            pending = await create_link(
                canonical_event_id=canonical.id,
                account_id=calendar.account_id,
                calendar_id=calendar.id,
                origin_account_id=origin_account_id,
            )
            logger.info(f"Created pending link {pending.id} for canonical {canonical.id} on calendar {calendar.id}")
            targets.append(pending)

        return targets

    async def _write_target(
        self,
        canonical: CanonicalEvent,
        link: EventLink,
        calendar: Calendar,
        operation_id: Optional[str],
    ) -> EventLink:
        existing = None
        if link.is_materialized:
            try:
                existing = await self.provider.get_event(calendar, link.external_event_id)
            except EventNotFoundError:
                logger.info(
                    f"Event {link.external_event_id} missing on calendar {calendar.id}, recreating"
                )

        body = materialize_for_target(
            canonical, calendar, operation_id, existing_event=existing, settings=self.settings
        )

        if existing is not None:
            try:
                written = await self.provider.update_event(calendar, link.external_event_id, body)
            except EventNotFoundError:
                logger.info(
                    f"Event {link.external_event_id} missing on calendar {calendar.id}, recreating"
                )
                written = await self.provider.create_event(calendar, body)
        else:
            written = await self.provider.create_event(calendar, body)

        return await update_link(
            link.id,
            LinkUpdate(
                external_event_id=written.get("id") or link.external_event_id,
                etag=written.get("etag") or "",
                content_hash=compute_event_hash(written),
                last_sync_operation_id=operation_id,
                last_synced_at=utcnow(),
            ),
        )

    async def propagate_event(
        self,
        canonical_id: str,
        source_link_id: Optional[str] = None,
        operation_id: Optional[str] = None,
    ) -> PropagationResult:
        """
        Propagate a canonical event to its linked calendars.

        The source link is excluded; without one every active link is a
        target. Failures are recorded per target and never stop the others.
        """
        canonical = await require_canonical_event(canonical_id)
        source_link = await get_link(source_link_id) if source_link_id else None
        origin_account_id = source_link.account_id if source_link else None

        result = PropagationResult(canonical_id=canonical_id, sync_operation_id=operation_id)
        targets = await self._select_targets(canonical, source_link, origin_account_id)

        for link in targets:
            calendar = await get_calendar(link.calendar_id)
            if calendar is None:
                logger.warning(
                    f"Calendar {link.calendar_id} not found while propagating canonical {canonical_id}"
                )
                result.skipped.append(link.id)
                continue
            if not calendar.sync_enabled:
                result.skipped.append(link.id)
                continue

            try:
                updated = await self._write_target(canonical, link, calendar, operation_id)
            except Exception as e:
                logger.error(
                    f"Failed to propagate canonical {canonical_id} to link {link.id} "
                    f"(calendar {calendar.id}): {e}"
                )
                result.failed.append(ItemError(item_id=link.id, error=str(e)))
                await log_sync(
                    operation="propagate",
                    result="error",
                    event_id=canonical_id,
                    from_account_id=origin_account_id,
                    to_account_id=link.account_id,
                    error=str(e),
                    metadata={"link_id": link.id, "calendar_id": calendar.id},
                )
                continue

            result.succeeded.append(updated.id)
            await log_sync(
                operation="propagate",
                result="success",
                event_id=canonical_id,
                from_account_id=origin_account_id,
                to_account_id=link.account_id,
                metadata={
                    "link_id": updated.id,
                    "calendar_id": calendar.id,
                    "external_event_id": updated.external_event_id,
                },
            )

        if result.attempted:
            logger.info(
                f"Propagated canonical {canonical_id}: {len(result.succeeded)} succeeded, "
                f"{len(result.failed)} failed, {len(result.skipped)} skipped"
            )
        return result
