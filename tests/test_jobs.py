"""Tests for scheduled jobs: periodic sync, token refresh, job locks and the scheduler."""

from __future__ import annotations

import pytest

from calmesh.database import format_ts, get_database, utcnow


@pytest.mark.asyncio
async def test_job_lock_is_exclusive(test_db):
    from calmesh.jobs.sync_job import acquire_job_lock, release_job_lock

    assert await acquire_job_lock("periodic_sync") is True
    assert await acquire_job_lock("periodic_sync") is False
    assert await acquire_job_lock("other_job") is True

    await release_job_lock("periodic_sync")
    assert await acquire_job_lock("periodic_sync") is True


@pytest.mark.asyncio
async def test_stale_job_lock_is_reclaimed(test_db):
    from datetime import timedelta

    from calmesh.jobs.sync_job import acquire_job_lock

    db = await get_database()
    await db.execute(
        "INSERT INTO job_locks (job_name, locked_at, locked_by) VALUES (?, ?, ?)",
        ("periodic_sync", format_ts(utcnow() - timedelta(hours=2)), "worker"),
    )
    await db.commit()

    assert await acquire_job_lock("periodic_sync") is True


@pytest.mark.asyncio
async def test_periodic_sync_enqueues_enabled_calendars(test_db, make_calendar):
    from calmesh.jobs.queue import SyncJobQueue, set_job_queue
    from calmesh.jobs.sync_job import acquire_job_lock, run_periodic_sync

    enabled = await make_calendar("alice@example.com")
    await make_calendar("bob@example.com", sync_enabled=False)

    async def handler(_calendar_id):
        return None

    queue = SyncJobQueue(handler, concurrency=1)
    set_job_queue(queue)
    try:
        assert await run_periodic_sync() == 1
        assert queue.qsize() == 1
        # Already queued
        assert await run_periodic_sync() == 0

        # Lock released after each run
        assert await acquire_job_lock("periodic_sync") is True
        assert await run_periodic_sync() == 0
    finally:
        set_job_queue(None)

    assert queue._pending == {enabled.id}


@pytest.mark.asyncio
async def test_refresh_job_uses_token_vault(monkeypatch):
    from calmesh.jobs.sync_job import refresh_expiring_tokens

    calls = []

    class FakeVault:
        async def refresh_expiring_tokens(self, within):
            calls.append(within)
            return 2

    monkeypatch.setattr("calmesh.auth.google.get_token_vault", lambda: FakeVault())

    await refresh_expiring_tokens()
    assert len(calls) == 1


def test_get_job_queue_requires_startup():
    from calmesh.jobs.queue import get_job_queue, set_job_queue

    set_job_queue(None)
    with pytest.raises(RuntimeError):
        get_job_queue()


@pytest.mark.asyncio
async def test_scheduler_registers_jobs(monkeypatch):
    from calmesh.config import get_settings
    from calmesh.jobs.scheduler import get_scheduler, setup_scheduler, shutdown_scheduler

    monkeypatch.setattr(get_settings(), "enable_webhooks", True)

    scheduler = setup_scheduler()
    try:
        job_ids = {job.id for job in scheduler.get_jobs()}
        assert {"periodic_sync", "token_refresh", "webhook_renewal", "webhook_initial_registration"} <= job_ids
        assert get_scheduler() is scheduler
    finally:
        shutdown_scheduler()

    assert get_scheduler() is None


@pytest.mark.asyncio
async def test_renew_expiring_channels_replaces_channel(test_db, make_calendar, monkeypatch):
    from datetime import timedelta

    from calmesh.jobs.webhook_renewal import renew_expiring_channels

    calendar = await make_calendar()
    db = await get_database()
    await db.execute(
        """INSERT INTO watch_channels (id, calendar_id, channel_id, resource_id, token, expiration, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        ("wc-1", calendar.id, "chan-old", "res-1", "tok", format_ts(utcnow() + timedelta(hours=2)),
         format_ts(utcnow())),
    )
    await db.commit()

    stopped, registered = [], []

    async def fake_stop(channel_id, resource_id, access_token):
        stopped.append((channel_id, access_token))

    async def fake_register(cal, access_token):
        registered.append((cal.id, access_token))

    class FakeVault:
        async def get_access_token(self, account_id):
            return "access-token"

    monkeypatch.setattr("calmesh.api.webhooks.stop_watch_channel", fake_stop)
    monkeypatch.setattr("calmesh.api.webhooks.register_watch_channel", fake_register)
    monkeypatch.setattr("calmesh.auth.google.get_token_vault", lambda: FakeVault())

    await renew_expiring_channels()

    assert stopped == [("chan-old", "access-token")]
    assert registered == [(calendar.id, "access-token")]
