"""Pytest configuration and fixtures."""

import copy
import itertools
import os
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

import pytest
import pytest_asyncio

# Set test environment variables before imports
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["ENCRYPTION_KEY_FILE"] = "/tmp/test_encryption.key"
os.environ["PUBLIC_URL"] = "http://localhost:3000"
os.environ["ENABLE_WEBHOOKS"] = "false"
os.environ["GOOGLE_CLIENT_ID"] = "client-id.apps.googleusercontent.com"
os.environ["GOOGLE_CLIENT_SECRET"] = "client-secret"


@pytest.fixture(scope="function")
def test_encryption_key():
    """Install a fresh encryption key for token storage."""
    from calmesh.encryption import generate_encryption_key, init_encryption_manager

    key = generate_encryption_key()
    init_encryption_manager(key)
    yield key


@pytest_asyncio.fixture
async def test_db():
    """Create a test database."""
    from calmesh.database import get_database, close_database, init_schema
    import calmesh.database as db_module

    # Reset the global connection
    db_module._db_connection = None

    # Create in-memory database
    db = await get_database()
    await init_schema(db)

    yield db

    await close_database()
    db_module._db_connection = None


class FakeCalendarProvider:
    """
    In-memory stand-in for Google Calendar.

    Events are keyed by our calendar id. Every write stamps a strictly
    increasing `updated` time so cursor-based listing behaves like Google.
    """

    def __init__(self):
        self.events: dict[str, dict[str, dict]] = {}
        self.updated_at: dict[tuple[str, str], datetime] = {}
        self.calls: list[tuple[str, str, Optional[str]]] = []
        self.failing_calendars: dict[str, Exception] = {}
        self._ids = itertools.count(1)
        self._last_stamp = datetime.min.replace(tzinfo=timezone.utc)

    def _stamp(self, calendar_id: str, event: dict) -> None:
        now = datetime.now(timezone.utc)
        if now <= self._last_stamp:
            now = self._last_stamp + timedelta(microseconds=1)
        self._last_stamp = now
        event["updated"] = now.isoformat().replace("+00:00", "Z")
        event["etag"] = f'"{next(self._ids)}"'
        self.updated_at[(calendar_id, event["id"])] = now

    def _check_failure(self, calendar_id: str) -> None:
        error = self.failing_calendars.get(calendar_id)
        if error is not None:
            raise error

    def _store(self, calendar_id: str, event: dict) -> dict:
        self._stamp(calendar_id, event)
        self.events.setdefault(calendar_id, {})[event["id"]] = event
        return copy.deepcopy(event)

    # -- provider interface ----------------------------------------------

    async def list_changed_events(self, calendar, updated_after):
        self.calls.append(("list", calendar.id, None))
        items = [
            (self.updated_at[(calendar.id, event_id)], event)
            for event_id, event in self.events.get(calendar.id, {}).items()
        ]
        if updated_after is not None:
            items = [item for item in items if item[0] > updated_after]
        return [copy.deepcopy(event) for _, event in sorted(items, key=lambda item: item[0])]

    async def get_event(self, calendar, external_event_id):
        from calmesh.errors import EventNotFoundError

        self.calls.append(("get", calendar.id, external_event_id))
        event = self.events.get(calendar.id, {}).get(external_event_id)
        if event is None:
            raise EventNotFoundError(external_event_id)
        return copy.deepcopy(event)

    async def create_event(self, calendar, body):
        self.calls.append(("create", calendar.id, None))
        self._check_failure(calendar.id)
        event = copy.deepcopy(body)
        event["id"] = f"evt-{next(self._ids)}"
        event["status"] = "confirmed"
        return self._store(calendar.id, event)

    async def update_event(self, calendar, external_event_id, body):
        from calmesh.errors import EventNotFoundError

        self.calls.append(("update", calendar.id, external_event_id))
        self._check_failure(calendar.id)
        if external_event_id not in self.events.get(calendar.id, {}):
            raise EventNotFoundError(external_event_id)
        event = copy.deepcopy(body)
        event["id"] = external_event_id
        event["status"] = "confirmed"
        return self._store(calendar.id, event)

    # -- simulated user activity -----------------------------------------

    def user_create(self, calendar, summary: str, start: str, end: str, **fields: Any) -> dict:
        """Create an event the way a person would in the Google UI."""
        event = {
            "id": f"user-{next(self._ids)}",
            "status": "confirmed",
            "summary": summary,
            "start": {"dateTime": start, "timeZone": fields.pop("time_zone", "UTC")},
            "end": {"dateTime": end, "timeZone": fields.pop("end_time_zone", "UTC")},
            **fields,
        }
        return self._store(calendar.id, event)

    def user_update(self, calendar, event_id: str, **changes: Any) -> dict:
        """Edit an event in place; extended properties survive, as they do in Google."""
        event = self.events[calendar.id][event_id]
        event.update(changes)
        return self._store(calendar.id, event)

    def user_cancel(self, calendar, event_id: str) -> dict:
        """Delete an event; incremental listings then only carry id and status."""
        event = {"id": event_id, "status": "cancelled"}
        return self._store(calendar.id, event)

    def writes_to(self, calendar_id: str) -> list[tuple[str, str, Optional[str]]]:
        return [call for call in self.calls if call[1] == calendar_id and call[0] in ("create", "update")]


@pytest.fixture
def provider():
    return FakeCalendarProvider()


@pytest_asyncio.fixture
async def make_calendar(test_db, test_encryption_key):
    """Factory registering an account (if needed) and a calendar for it."""
    from calmesh.auth.google import store_account_tokens
    from calmesh.sync.calendars import create_calendar

    async def _make(email: str = "alice@example.com", external_calendar_id: Optional[str] = None, **kwargs):
        account_id = await store_account_tokens(email, "access-token", "refresh-token", expires_in=3600)
        return await create_calendar(
            account_id,
            external_calendar_id or f"{email}/primary",
            name=kwargs.pop("name", email.split("@")[0]),
            **kwargs,
        )

    return _make
