"""Tests for canonical event matching strategies."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from calmesh.sync.matching import (
    HeuristicTitleTimeMatcher,
    LinkRegistryMatcher,
    MatcherChain,
    SyncMetadataMatcher,
)
from calmesh.sync.metadata import build_private_properties

NINE = datetime(2024, 5, 2, 9, 0, tzinfo=timezone.utc)


def _event(event_id: str, summary: str | None, start: str, **extra) -> dict:
    return {
        "id": event_id,
        "summary": summary,
        "start": {"dateTime": start},
        "end": {"dateTime": start},
        **extra,
    }


async def _linked_canonical(calendar, title: str = "Standup", external_id: str = "evt-1"):
    from calmesh.sync.canonical import create_canonical_event
    from calmesh.sync.links import create_link

    canonical = await create_canonical_event(NINE, NINE + timedelta(minutes=15), title=title)
    await create_link(canonical.id, calendar.account_id, calendar.id, external_id)
    return canonical


@pytest.mark.asyncio
async def test_metadata_matcher(test_db, make_calendar):
    calendar = await make_calendar()
    canonical = await _linked_canonical(calendar)
    matcher = SyncMetadataMatcher()

    tagged = _event("other", "x", "2024-05-02T09:00:00Z",
                    extendedProperties={"private": build_private_properties(canonical.id)})
    assert (await matcher.match(calendar, tagged)).id == canonical.id

    dangling = _event("other", "x", "2024-05-02T09:00:00Z",
                      extendedProperties={"private": build_private_properties("gone")})
    assert await matcher.match(calendar, dangling) is None
    assert await matcher.match(calendar, _event("other", "x", "2024-05-02T09:00:00Z")) is None


@pytest.mark.asyncio
async def test_link_registry_matcher(test_db, make_calendar):
    calendar = await make_calendar()
    other = await make_calendar("bob@example.com")
    canonical = await _linked_canonical(calendar, external_id="evt-1")
    matcher = LinkRegistryMatcher()

    assert (await matcher.match(calendar, _event("evt-1", "x", "2024-05-02T09:00:00Z"))).id == canonical.id
    # Same external id under another account is a different event
    assert await matcher.match(other, _event("evt-1", "x", "2024-05-02T09:00:00Z")) is None


@pytest.mark.asyncio
async def test_heuristic_matcher_window_and_title(test_db, make_calendar):
    calendar = await make_calendar()
    canonical = await _linked_canonical(calendar)
    matcher = HeuristicTitleTimeMatcher(window=timedelta(minutes=60))

    near = _event("recreated", "Standup", "2024-05-02T09:30:00Z")
    assert (await matcher.match(calendar, near)).id == canonical.id

    assert await matcher.match(calendar, _event("x", "Retro", "2024-05-02T09:30:00Z")) is None
    assert await matcher.match(calendar, _event("x", "Standup", "2024-05-02T12:00:00Z")) is None
    assert await matcher.match(calendar, _event("x", None, "2024-05-02T09:00:00Z")) is None


@pytest.mark.asyncio
async def test_heuristic_matcher_is_scoped_to_calendar(test_db, make_calendar):
    calendar = await make_calendar()
    other = await make_calendar("bob@example.com")
    await _linked_canonical(calendar)
    matcher = HeuristicTitleTimeMatcher(window=timedelta(minutes=60))

    assert await matcher.match(other, _event("x", "Standup", "2024-05-02T09:00:00Z")) is None


@pytest.mark.asyncio
async def test_matcher_chain_first_hit_wins(test_db, make_calendar):
    calendar = await make_calendar()
    first = await _linked_canonical(calendar, external_id="evt-1")
    second = await _linked_canonical(calendar, title="Other", external_id="evt-2")

    chain = MatcherChain([SyncMetadataMatcher(), LinkRegistryMatcher()])
    event = _event("evt-1", "x", "2024-05-02T09:00:00Z",
                   extendedProperties={"private": build_private_properties(second.id)})

    assert (await chain.resolve(calendar, event)).id == second.id
    assert (await chain.resolve(calendar, _event("evt-1", "x", "2024-05-02T09:00:00Z"))).id == first.id
    assert await chain.resolve(calendar, _event("evt-9", "x", "2024-05-02T09:00:00Z")) is None
