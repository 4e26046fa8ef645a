"""Detection and resolution of divergent edits across linked copies."""

import logging
import uuid
from typing import Any, Optional, Union

from calmesh.database import log_sync
from calmesh.errors import ConflictError
from calmesh.models import (
    AdoptResolution,
    CanonicalEvent,
    CanonicalEventUpdate,
    Conflict,
    ConflictVariant,
    EventLink,
    LinkStatus,
    ManualResolution,
    PrivacyMode,
    PropagationResult,
    VariantData,
    parse_resolution,
)
from calmesh.sync.calendars import get_calendar, get_calendar_labels
from calmesh.sync.canonical import (
    get_canonical_event,
    parse_event_time,
    require_canonical_event,
    update_canonical_event,
)
from calmesh.sync.google_calendar import CalendarProvider
from calmesh.sync.links import get_link, list_active_links, list_links_for_canonical
from calmesh.sync.propagation import PropagationEngine

logger = logging.getLogger(__name__)


def _parse_updated(value: Optional[str]):
    if not value:
        return None
    parsed, _ = parse_event_time({"dateTime": value})
    return parsed


class ConflictResolver:
    """Finds canonical events whose copies disagree and applies user decisions."""

    def __init__(self, provider: CalendarProvider, propagation: Optional[PropagationEngine] = None):
        self.provider = provider
        self.propagation = propagation or PropagationEngine(provider)

    async def _comparable_links(self, links: list[EventLink]) -> dict[str, list[EventLink]]:
        """Group active, hashed links by content hash; busy-only copies never compare equal."""
        groups: dict[str, list[EventLink]] = {}
        for link in links:
            if link.status != LinkStatus.ACTIVE or not link.content_hash:
                continue
            calendar = await get_calendar(link.calendar_id)
            if calendar is None or calendar.privacy_mode == PrivacyMode.BUSY_ONLY:
                continue
            groups.setdefault(link.content_hash, []).append(link)
        return groups

    async def _build_variant(self, canonical: CanonicalEvent, link: EventLink) -> Optional[ConflictVariant]:
        calendar = await get_calendar(link.calendar_id)
        if calendar is None:
            return None
        account_email, calendar_name = await get_calendar_labels(calendar.id)

        live: Optional[dict] = None
        if link.is_materialized:
            try:
                live = await self.provider.get_event(calendar, link.external_event_id)
            except Exception as e:
                logger.warning(f"Failed to fetch event for link {link.id}, using canonical data: {e}")

        if live is None:
            data = VariantData(
                start=canonical.start_at,
                end=canonical.end_at,
                location=canonical.location,
                description=canonical.description,
            )
            last_modified = link.last_synced_at
        else:
            start, _ = parse_event_time(live.get("start"))
            end, _ = parse_event_time(live.get("end"))
            data = VariantData(
                start=start or canonical.start_at,
                end=end or canonical.end_at,
                location=live.get("location"),
                description=live.get("description"),
            )
            last_modified = _parse_updated(live.get("updated")) or link.last_synced_at

        return ConflictVariant(
            event_link_id=link.id,
            account_email=account_email,
            calendar_name=calendar_name or "Unknown Calendar",
            data=data,
            last_modified=last_modified,
        )

    async def _conflict_for(self, canonical: CanonicalEvent, links: list[EventLink]) -> Optional[Conflict]:
        groups = await self._comparable_links(links)
        if len(groups) < 2:
            return None

        variants = []
        for group in groups.values():
            representative = max(group, key=lambda link: link.last_synced_at)
            variant = await self._build_variant(canonical, representative)
            if variant is not None:
                variants.append(variant)

        if len(variants) < 2:
            return None

        return Conflict(
            canonical_id=canonical.id,
            title=canonical.title or "Untitled Event",
            variants=variants,
        )

    async def detect_conflicts(self) -> list[Conflict]:
        """List every canonical event whose active copies hold two or more distinct contents."""
        by_canonical: dict[str, list[EventLink]] = {}
        for link in await list_active_links():
            by_canonical.setdefault(link.canonical_event_id, []).append(link)

        conflicts = []
        for canonical_id, links in by_canonical.items():
            if len(links) < 2:
                continue
            canonical = await get_canonical_event(canonical_id)
            if canonical is None:
                continue
            conflict = await self._conflict_for(canonical, links)
            if conflict is not None:
                conflicts.append(conflict)

        logger.info(f"Detected {len(conflicts)} conflicts")
        return conflicts

    async def get_conflict(self, canonical_id: str) -> Optional[Conflict]:
        canonical = await get_canonical_event(canonical_id)
        if canonical is None:
            return None
        links = await list_links_for_canonical(canonical_id)
        return await self._conflict_for(canonical, links)

    async def _adopted_update(
        self, canonical: CanonicalEvent, resolution: AdoptResolution
    ) -> CanonicalEventUpdate:
        link = await get_link(resolution.adopt_link_id)
        if link is None or link.canonical_event_id != canonical.id:
            raise ConflictError(
                f"Event link {resolution.adopt_link_id} does not belong to canonical event {canonical.id}"
            )
        if not link.is_materialized:
            raise ConflictError(f"Event link {link.id} has no external event to adopt")

        calendar = await get_calendar(link.calendar_id)
        if calendar is None:
            raise ConflictError(f"Calendar for event link {link.id} no longer exists")

        live = await self.provider.get_event(calendar, link.external_event_id)
        start_block = live.get("start") or {}
        start, all_day = parse_event_time(start_block)
        end, _ = parse_event_time(live.get("end"))

        return CanonicalEventUpdate(
            title=live.get("summary") or canonical.title,
            start_at=start or canonical.start_at,
            end_at=end or canonical.end_at,
            timezone=start_block.get("timeZone") or canonical.timezone,
            location=live.get("location") or canonical.location,
            description=live.get("description") or canonical.description,
            all_day=all_day if start else canonical.all_day,
        )

    async def resolve_conflict(
        self,
        canonical_id: str,
        resolution: Union[AdoptResolution, ManualResolution, dict[str, Any]],
    ) -> PropagationResult:
        """
        Overwrite the canonical event with the chosen content and push it to
        every active copy under a fresh operation token.

        Arguments are validated before anything is written.
        """
        if isinstance(resolution, dict):
            resolution = parse_resolution(resolution)

        canonical = await require_canonical_event(canonical_id)

        if isinstance(resolution, AdoptResolution):
            update = await self._adopted_update(canonical, resolution)
        else:
            update = resolution.manual_data
            if not update.changes():
                raise ConflictError("manual_data must set at least one field")

        await update_canonical_event(canonical_id, update)

        operation_id = str(uuid.uuid4())
        result = await self.propagation.propagate_event(canonical_id, None, operation_id)

        await log_sync(
            operation="conflict_resolution",
            result="error" if result.failed else "success",
            event_id=canonical_id,
            error="; ".join(f"{f.item_id}: {f.error}" for f in result.failed) or None,
            metadata={
                "strategy": resolution.strategy,
                "adopt_link_id": getattr(resolution, "adopt_link_id", None),
                "manual_data": update.changes() if isinstance(resolution, ManualResolution) else None,
                "succeeded": len(result.succeeded),
                "failed": len(result.failed),
            },
        )
        logger.info(f"Resolved conflict on canonical {canonical_id} with strategy {resolution.strategy}")
        return result
