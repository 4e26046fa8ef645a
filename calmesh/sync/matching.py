"""Strategies for resolving an incoming provider event to a canonical event."""

import logging
from datetime import timedelta
from typing import Optional, Protocol, Sequence

from calmesh.config import get_settings
from calmesh.models import Calendar, CanonicalEvent
from calmesh.sync.canonical import get_canonical_event, list_canonical_events_near, parse_event_time
from calmesh.sync.links import find_link_by_external_id
from calmesh.sync.metadata import read_sync_metadata

logger = logging.getLogger(__name__)


class CanonicalMatcher(Protocol):
    """A single way of finding the canonical event an external event belongs to."""

    name: str

    async def match(self, calendar: Calendar, event: dict) -> Optional[CanonicalEvent]:
        ...


class SyncMetadataMatcher:
    """Match on the canonical id stamped into the event's private properties."""

    name = "metadata"

    async def match(self, calendar: Calendar, event: dict) -> Optional[CanonicalEvent]:
        canonical_id = read_sync_metadata(event).canonical_id
        if not canonical_id:
            return None
        return await get_canonical_event(canonical_id)


class LinkRegistryMatcher:
    """Match on an existing link for (account, external event id)."""

    name = "link"

    async def match(self, calendar: Calendar, event: dict) -> Optional[CanonicalEvent]:
        link = await find_link_by_external_id(calendar.account_id, event.get("id", ""))
        if link is None:
            return None
        return await get_canonical_event(link.canonical_event_id)


class HeuristicTitleTimeMatcher:
    """
    Match an untagged event against canonical events already linked to the
    same calendar: same title, start within a window of the incoming start.

    Catches copies that lost their metadata, e.g. an event deleted and
    recreated by hand.
    """

    name = "heuristic"

    def __init__(self, window: Optional[timedelta] = None):
        if window is None:
            window = timedelta(minutes=get_settings().heuristic_match_window_minutes)
        self.window = window

    async def match(self, calendar: Calendar, event: dict) -> Optional[CanonicalEvent]:
        title = event.get("summary")
        if not title:
            return None

        try:
            start_at, _ = parse_event_time(event.get("start"))
        except ValueError:
            return None
        if start_at is None:
            return None

        candidates = await list_canonical_events_near(
            calendar.id, start_at - self.window, start_at + self.window
        )
        for candidate in candidates:
            if candidate.title == title:
                return candidate
        return None


class MatcherChain:
    """Try matchers in order; the first hit wins."""

    def __init__(self, matchers: Sequence[CanonicalMatcher]):
        self.matchers = list(matchers)

    async def resolve(self, calendar: Calendar, event: dict) -> Optional[CanonicalEvent]:
        for matcher in self.matchers:
            canonical = await matcher.match(calendar, event)
            if canonical is not None:
                logger.debug(
                    f"Event {event.get('id')} matched canonical {canonical.id} via {matcher.name}"
                )
                return canonical
        return None


def default_matcher_chain() -> MatcherChain:
    """Build the matcher chain from settings."""
    matchers: list[CanonicalMatcher] = [SyncMetadataMatcher(), LinkRegistryMatcher()]
    if get_settings().enable_heuristic_matching:
        matchers.append(HeuristicTitleTimeMatcher())
    return MatcherChain(matchers)
