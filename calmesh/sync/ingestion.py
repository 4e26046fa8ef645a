"""Ingestion and reconciliation of provider changes into canonical state."""

import asyncio
import logging
import uuid
from datetime import timedelta
from typing import Optional

from calmesh.config import Settings, get_settings
from calmesh.database import log_sync, utcnow
from calmesh.errors import ValidationError
from calmesh.models import (
    Calendar,
    CanonicalEventUpdate,
    EventLink,
    IngestionResult,
    ItemError,
    LinkStatus,
    LinkUpdate,
)
from calmesh.sync.calendars import require_calendar, set_sync_cursor
from calmesh.sync.canonical import create_canonical_event, fields_from_event, update_canonical_event
from calmesh.sync.google_calendar import CalendarProvider
from calmesh.sync.hashing import compute_event_hash
from calmesh.sync.links import find_link_by_external_id, update_link, upsert_link
from calmesh.sync.matching import MatcherChain, default_matcher_chain
from calmesh.sync.metadata import read_sync_metadata
from calmesh.sync.propagation import PropagationEngine

logger = logging.getLogger(__name__)

PROCESSED = "processed"
UNCHANGED = "unchanged"
SELF_REFLECTION = "self_reflection"

# Per-calendar locks so a webhook and a periodic run never ingest the same calendar at once.
_calendar_locks: dict[str, asyncio.Lock] = {}


def _get_calendar_lock(calendar_id: str) -> asyncio.Lock:
    if calendar_id not in _calendar_locks:
        _calendar_locks[calendar_id] = asyncio.Lock()
    return _calendar_locks[calendar_id]


class IngestionEngine:
    """Pulls changed events for a calendar and reconciles them with canonical state."""

    def __init__(
        self,
        provider: CalendarProvider,
        propagation: Optional[PropagationEngine] = None,
        matchers: Optional[MatcherChain] = None,
        settings: Optional[Settings] = None,
    ):
        self.provider = provider
        self.settings = settings or get_settings()
        self.propagation = propagation or PropagationEngine(provider, self.settings)
        self.matchers = matchers or default_matcher_chain()
        self.reflection_window = timedelta(seconds=self.settings.self_reflection_window_seconds)

    async def sync_calendar(self, calendar_id: str) -> IngestionResult:
        """
        Ingest every event changed since the calendar's cursor.

        Per-event failures are recorded and do not stop the pass. A missing
        calendar or an event that cannot form a canonical event aborts it,
        leaving the cursor where it was.
        """
        calendar = await require_calendar(calendar_id)
        if not calendar.sync_enabled:
            logger.debug(f"Calendar {calendar_id} is not enabled for sync")
            return IngestionResult(calendar_id=calendar_id, skipped=True)

        async with _get_calendar_lock(calendar_id):
            return await self._sync_locked(calendar)

    async def _sync_locked(self, calendar: Calendar) -> IngestionResult:
        result = IngestionResult(calendar_id=calendar.id)
        started_at = utcnow()

        events = await self.provider.list_changed_events(calendar, calendar.last_sync_cursor)
        logger.info(f"Found {len(events)} changed events for calendar {calendar.id}")

        for event in events:
            result.events_seen += 1
            external_id = event.get("id")
            if not external_id:
                logger.warning(f"Skipping event without ID on calendar {calendar.id}")
                continue

            try:
                outcome = await self._ingest_event(calendar, event, result)
            except ValidationError:
                raise
            except Exception as e:
                logger.error(f"Failed to ingest event {external_id} on calendar {calendar.id}: {e}")
                result.failed.append(ItemError(item_id=external_id, error=str(e)))
                await log_sync(
                    operation="ingest",
                    result="error",
                    from_account_id=calendar.account_id,
                    error=str(e),
                    metadata={"calendar_id": calendar.id, "external_event_id": external_id},
                )
                continue

            if outcome == PROCESSED:
                result.processed += 1
            elif outcome == SELF_REFLECTION:
                result.self_reflections += 1
            else:
                result.unchanged += 1

        await set_sync_cursor(calendar.id, started_at)

        logger.info(
            f"Sync completed for calendar {calendar.id}: {result.processed} processed, "
            f"{result.unchanged} unchanged, {result.self_reflections} self-reflections, "
            f"{len(result.failed)} failed"
        )
        return result

    def _is_self_reflection(self, link: EventLink, event: dict, content_hash: str) -> bool:
        """Check whether an event is the echo of our own earlier write."""
        operation_id = read_sync_metadata(event).operation_id
        if operation_id and link.last_sync_operation_id == operation_id:
            return True

        if link.content_hash == content_hash and link.last_synced_at is not None:
            return utcnow() - link.last_synced_at <= self.reflection_window

        return False

    async def _ingest_event(self, calendar: Calendar, event: dict, result: IngestionResult) -> str:
        external_id = event["id"]
        link = await find_link_by_external_id(calendar.account_id, external_id)

        if event.get("status") == "cancelled":
            return await self._ingest_cancellation(calendar, link, external_id)

        content_hash = compute_event_hash(event)

        if link is not None:
            if self._is_self_reflection(link, event, content_hash):
                # The echo is consumed; a later edit still carrying this token is a real change
                await update_link(
                    link.id,
                    LinkUpdate(
                        last_sync_operation_id=None,
                        content_hash=content_hash,
                        etag=event.get("etag") or link.etag,
                    ),
                )
                logger.debug(f"Skipping self-reflection for event {external_id}")
                return SELF_REFLECTION

            if link.content_hash == content_hash and link.status == LinkStatus.ACTIVE:
                logger.debug(f"Event {external_id} content unchanged, skipping update")
                return UNCHANGED

        canonical = await self.matchers.resolve(calendar, event)
        fields = fields_from_event(event)
        if canonical is None:
            canonical = await create_canonical_event(**fields)
            logger.info(f"Created canonical event {canonical.id} from event {external_id}")
        else:
            canonical = await update_canonical_event(canonical.id, CanonicalEventUpdate(**fields))

        operation_id = str(uuid.uuid4())
        link = await upsert_link(
            canonical_event_id=canonical.id,
            account_id=calendar.account_id,
            calendar_id=calendar.id,
            external_event_id=external_id,
            etag=event.get("etag") or "",
            content_hash=content_hash,
            status=LinkStatus.ACTIVE,
            last_sync_operation_id=operation_id,
            origin_account_id=calendar.account_id,
        )

        await log_sync(
            operation="ingest",
            result="success",
            event_id=canonical.id,
            from_account_id=calendar.account_id,
            metadata={"calendar_id": calendar.id, "external_event_id": external_id},
        )

        if calendar.propagates_outward:
            propagation = await self.propagation.propagate_event(canonical.id, link.id, operation_id)
            result.propagations.append(propagation)

        return PROCESSED

    async def _ingest_cancellation(
        self, calendar: Calendar, link: Optional[EventLink], external_id: str
    ) -> str:
        """Mark the link of a cancelled event deleted; canonical state is left alone."""
        if link is None or link.status == LinkStatus.DELETED:
            return UNCHANGED

        await update_link(
            link.id,
            LinkUpdate(status=LinkStatus.DELETED, last_synced_at=utcnow()),
        )
        await log_sync(
            operation="ingest",
            result="success",
            event_id=link.canonical_event_id,
            from_account_id=calendar.account_id,
            metadata={
                "calendar_id": calendar.id,
                "external_event_id": external_id,
                "status": LinkStatus.DELETED.value,
            },
        )
        logger.info(f"Event {external_id} cancelled on calendar {calendar.id}, link {link.id} marked deleted")
        return PROCESSED
