"""Tests for conflict detection and resolution."""

from __future__ import annotations

import pytest

from calmesh.database import list_sync_log
from calmesh.errors import ConflictError, ExternalApiError, NotFoundError
from calmesh.models import AdoptResolution, PrivacyMode, SyncDirection
from calmesh.sync.conflicts import ConflictResolver
from calmesh.sync.ingestion import IngestionEngine

LUNCH_START = "2024-05-02T12:00:00Z"
LUNCH_END = "2024-05-02T13:00:00Z"


async def _diverged_pair(provider, make_calendar, privacy_mode=PrivacyMode.DETAIL):
    """
    Connect A and B, mirror an event from A into B, then edit it on A while
    writes to B fail, leaving the two copies with different content.
    """
    from calmesh.sync.connections import create_connection
    from calmesh.sync.links import list_links_for_canonical

    cal_a = await make_calendar("alice@example.com", name="Work")
    cal_b = await make_calendar("bob@example.com", name="Home", privacy_mode=privacy_mode)
    await create_connection(cal_a.id, cal_b.id)
    event = provider.user_create(cal_a, "Lunch", LUNCH_START, LUNCH_END, location="Diner")
    engine = IngestionEngine(provider)

    first = await engine.sync_calendar(cal_a.id)
    canonical_id = first.propagations[0].canonical_id

    provider.failing_calendars[cal_b.id] = ExternalApiError("backend error", status=503)
    provider.user_update(cal_a, event["id"], location="Cafe")
    await engine.sync_calendar(cal_a.id)
    provider.failing_calendars.clear()

    links = {link.calendar_id: link for link in await list_links_for_canonical(canonical_id)}
    return cal_a, cal_b, canonical_id, links


@pytest.mark.asyncio
async def test_consistent_copies_are_not_conflicts(test_db, provider, make_calendar):
    from calmesh.sync.connections import create_connection

    cal_a = await make_calendar("alice@example.com")
    cal_b = await make_calendar("bob@example.com")
    await create_connection(cal_a.id, cal_b.id)
    provider.user_create(cal_a, "Lunch", LUNCH_START, LUNCH_END)
    await IngestionEngine(provider).sync_calendar(cal_a.id)

    assert await ConflictResolver(provider).detect_conflicts() == []


@pytest.mark.asyncio
async def test_diverged_copies_are_detected(test_db, provider, make_calendar):
    cal_a, cal_b, canonical_id, links = await _diverged_pair(provider, make_calendar)
    resolver = ConflictResolver(provider)

    conflicts = await resolver.detect_conflicts()

    assert len(conflicts) == 1
    conflict = conflicts[0]
    assert conflict.canonical_id == canonical_id
    assert conflict.title == "Lunch"
    variants = {variant.event_link_id: variant for variant in conflict.variants}
    assert set(variants) == {links[cal_a.id].id, links[cal_b.id].id}
    assert variants[links[cal_a.id].id].data.location == "Cafe"
    assert variants[links[cal_a.id].id].account_email == "alice@example.com"
    assert variants[links[cal_a.id].id].calendar_name == "Work"
    assert variants[links[cal_b.id].id].data.location == "Diner"

    assert (await resolver.get_conflict(canonical_id)).canonical_id == canonical_id


@pytest.mark.asyncio
async def test_busy_only_copies_never_conflict(test_db, provider, make_calendar):
    _, _, canonical_id, _ = await _diverged_pair(provider, make_calendar, PrivacyMode.BUSY_ONLY)
    resolver = ConflictResolver(provider)

    assert await resolver.detect_conflicts() == []
    assert await resolver.get_conflict(canonical_id) is None


@pytest.mark.asyncio
async def test_adopt_resolution_converges_copies(test_db, provider, make_calendar):
    from calmesh.sync.canonical import get_canonical_event

    cal_a, cal_b, canonical_id, links = await _diverged_pair(provider, make_calendar)
    resolver = ConflictResolver(provider)

    result = await resolver.resolve_conflict(
        canonical_id, {"strategy": "adopt-B", "adopt_link_id": links[cal_b.id].id}
    )

    assert result.failed == []
    assert len(result.succeeded) == 2
    assert result.sync_operation_id
    assert (await get_canonical_event(canonical_id)).location == "Diner"
    a_copy = provider.events[cal_a.id][links[cal_a.id].external_event_id]
    assert a_copy["location"] == "Diner"
    assert await resolver.detect_conflicts() == []

    entries, _ = await list_sync_log(operation="conflict_resolution")
    assert entries[0]["result"] == "success"


@pytest.mark.asyncio
async def test_manual_resolution_applies_fields(test_db, provider, make_calendar):
    from calmesh.sync.canonical import get_canonical_event

    cal_a, cal_b, canonical_id, links = await _diverged_pair(provider, make_calendar)
    resolver = ConflictResolver(provider)

    await resolver.resolve_conflict(
        canonical_id, {"strategy": "manual", "manual_data": {"location": "Park", "title": "Picnic"}}
    )

    canonical = await get_canonical_event(canonical_id)
    assert canonical.location == "Park"
    assert canonical.title == "Picnic"
    for calendar in (cal_a, cal_b):
        copy = provider.events[calendar.id][links[calendar.id].external_event_id]
        assert copy["location"] == "Park"
    assert await resolver.detect_conflicts() == []


@pytest.mark.asyncio
async def test_invalid_resolutions_leave_canonical_untouched(test_db, provider, make_calendar):
    from calmesh.sync.canonical import create_canonical_event, get_canonical_event
    from calmesh.sync.links import create_link

    cal_a, cal_b, canonical_id, links = await _diverged_pair(provider, make_calendar)
    resolver = ConflictResolver(provider)
    before = await get_canonical_event(canonical_id)
    writes_before = len(provider.writes_to(cal_a.id)) + len(provider.writes_to(cal_b.id))

    other = await create_canonical_event(before.start_at, before.end_at, title="Other")
    foreign = await create_link(other.id, cal_a.account_id, cal_a.id, "evt-foreign")

    with pytest.raises(ConflictError):
        await resolver.resolve_conflict(canonical_id, {"strategy": "adopt-A", "adopt_link_id": foreign.id})
    with pytest.raises(ConflictError):
        await resolver.resolve_conflict(canonical_id, AdoptResolution(strategy="adopt-A", adopt_link_id="missing"))
    with pytest.raises(ConflictError):
        await resolver.resolve_conflict(canonical_id, {"strategy": "manual", "manual_data": {}})
    with pytest.raises(ConflictError):
        await resolver.resolve_conflict(canonical_id, {"strategy": "manual"})
    with pytest.raises(ConflictError):
        await resolver.resolve_conflict(canonical_id, {"strategy": "newest-wins"})

    after = await get_canonical_event(canonical_id)
    assert after.model_dump(exclude={"last_modified_at"}) == before.model_dump(exclude={"last_modified_at"})
    assert after.last_modified_at == before.last_modified_at
    assert len(provider.writes_to(cal_a.id)) + len(provider.writes_to(cal_b.id)) == writes_before


@pytest.mark.asyncio
async def test_resolving_unknown_canonical_raises(test_db, provider):
    with pytest.raises(NotFoundError):
        await ConflictResolver(provider).resolve_conflict(
            "missing", {"strategy": "manual", "manual_data": {"title": "x"}}
        )


@pytest.mark.asyncio
async def test_single_link_never_conflicts(test_db, provider, make_calendar):
    calendar = await make_calendar()
    provider.user_create(calendar, "Lunch", LUNCH_START, LUNCH_END)
    result = await IngestionEngine(provider).sync_calendar(calendar.id)
    canonical_id = result.propagations[0].canonical_id

    resolver = ConflictResolver(provider)
    assert await resolver.detect_conflicts() == []
    assert await resolver.get_conflict(canonical_id) is None


@pytest.mark.asyncio
async def test_writeonly_copy_converges_after_resolution(test_db, provider, make_calendar):
    from calmesh.sync.canonical import get_canonical_event
    from calmesh.sync.connections import create_connection
    from calmesh.sync.links import list_links_for_canonical

    cal_w = await make_calendar("walt@example.com", sync_direction=SyncDirection.WRITEONLY)
    cal_b = await make_calendar("bob@example.com")
    await create_connection(cal_w.id, cal_b.id)
    event = provider.user_create(cal_w, "Lunch", LUNCH_START, LUNCH_END)
    engine = IngestionEngine(provider)
    first = await engine.sync_calendar(cal_w.id)
    canonical_id = first.propagations[0].canonical_id
    await engine.sync_calendar(cal_b.id)
    links = {link.calendar_id: link for link in await list_links_for_canonical(canonical_id)}

    # W misses B's edit, so the two copies drift apart
    provider.failing_calendars[cal_w.id] = ExternalApiError("backend error", status=503)
    provider.user_update(cal_b, links[cal_b.id].external_event_id, location="Cafe")
    await engine.sync_calendar(cal_b.id)
    provider.failing_calendars.clear()

    resolver = ConflictResolver(provider)
    assert len(await resolver.detect_conflicts()) == 1

    result = await resolver.resolve_conflict(
        canonical_id, {"strategy": "adopt-B", "adopt_link_id": links[cal_b.id].id}
    )

    assert result.skipped == []
    assert links[cal_w.id].id in result.succeeded
    assert (await get_canonical_event(canonical_id)).location == "Cafe"
    assert provider.events[cal_w.id][event["id"]]["location"] == "Cafe"
    assert await resolver.detect_conflicts() == []
