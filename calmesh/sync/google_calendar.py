"""Calendar provider interface and its Google Calendar implementation."""

import asyncio
import logging
from datetime import datetime
from typing import Any, Optional, Protocol

from google.oauth2.credentials import Credentials
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calmesh.database import format_ts
from calmesh.errors import EventNotFoundError, ExternalApiError
from calmesh.models import Calendar

logger = logging.getLogger(__name__)

_NOT_FOUND_STATUSES = (404, 410)


class CalendarProvider(Protocol):
    """Operations the sync engine needs from a calendar backend."""

    async def list_changed_events(
        self, calendar: Calendar, updated_after: Optional[datetime]
    ) -> list[dict[str, Any]]:
        ...

    async def get_event(self, calendar: Calendar, external_event_id: str) -> dict[str, Any]:
        ...

    async def create_event(self, calendar: Calendar, body: dict[str, Any]) -> dict[str, Any]:
        ...

    async def update_event(
        self, calendar: Calendar, external_event_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        ...


class GoogleCalendarClient:
    """Blocking wrapper around the Google Calendar v3 events resource."""

    def __init__(self, access_token: str):
        self.credentials = Credentials(token=access_token)
        self.service = build("calendar", "v3", credentials=self.credentials, cache_discovery=False)

    def list_events(self, calendar_id: str, updated_min: Optional[str] = None) -> list[dict]:
        """List events, including cancelled ones, changed since updated_min."""
        request_params: dict[str, Any] = {
            "calendarId": calendar_id,
            "maxResults": 2500,
            "showDeleted": True,
        }
        if updated_min:
            request_params["updatedMin"] = updated_min

        all_events = []
        page_token = None

        while True:
            if page_token:
                request_params["pageToken"] = page_token

            result = self.service.events().list(**request_params).execute()
            all_events.extend(result.get("items", []))

            page_token = result.get("nextPageToken")
            if not page_token:
                break

        return all_events

    def get_event(self, calendar_id: str, event_id: str) -> dict:
        return self.service.events().get(calendarId=calendar_id, eventId=event_id).execute()

    def create_event(self, calendar_id: str, event_data: dict) -> dict:
        return self.service.events().insert(
            calendarId=calendar_id,
            body=event_data,
            sendUpdates="none",
        ).execute()

    def update_event(self, calendar_id: str, event_id: str, event_data: dict) -> dict:
        return self.service.events().update(
            calendarId=calendar_id,
            eventId=event_id,
            body=event_data,
            sendUpdates="none",
        ).execute()


def _translate_http_error(e: HttpError, event_id: Optional[str] = None) -> ExternalApiError:
    status = e.resp.status if e.resp is not None else None
    if event_id and status in _NOT_FOUND_STATUSES:
        return EventNotFoundError(event_id, status=status)
    return ExternalApiError(str(e), status=status)


class GoogleCalendarProvider:
    """
    CalendarProvider backed by the Google Calendar API.

    Access tokens come from the token vault per call; the blocking client
    runs in a worker thread.
    """

    def __init__(self, token_vault):
        self.token_vault = token_vault

    async def _client(self, calendar: Calendar) -> GoogleCalendarClient:
        access_token = await self.token_vault.get_access_token(calendar.account_id)
        return GoogleCalendarClient(access_token)

    async def list_changed_events(
        self, calendar: Calendar, updated_after: Optional[datetime]
    ) -> list[dict[str, Any]]:
        client = await self._client(calendar)
        updated_min = format_ts(updated_after).replace("+00:00", "Z") if updated_after else None
        try:
            return await asyncio.to_thread(
                client.list_events, calendar.external_calendar_id, updated_min
            )
        except HttpError as e:
            raise _translate_http_error(e) from e

    async def get_event(self, calendar: Calendar, external_event_id: str) -> dict[str, Any]:
        client = await self._client(calendar)
        try:
            return await asyncio.to_thread(
                client.get_event, calendar.external_calendar_id, external_event_id
            )
        except HttpError as e:
            raise _translate_http_error(e, external_event_id) from e

    async def create_event(self, calendar: Calendar, body: dict[str, Any]) -> dict[str, Any]:
        client = await self._client(calendar)
        try:
            return await asyncio.to_thread(client.create_event, calendar.external_calendar_id, body)
        except HttpError as e:
            raise _translate_http_error(e) from e

    async def update_event(
        self, calendar: Calendar, external_event_id: str, body: dict[str, Any]
    ) -> dict[str, Any]:
        client = await self._client(calendar)
        try:
            return await asyncio.to_thread(
                client.update_event, calendar.external_calendar_id, external_event_id, body
            )
        except HttpError as e:
            raise _translate_http_error(e, external_event_id) from e
