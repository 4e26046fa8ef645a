"""Error taxonomy shared by the sync engine and the HTTP layer."""

from typing import Optional


class CalmeshError(Exception):
    """Base class for errors raised by calmesh."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code


class ValidationError(CalmeshError):
    """Required data is missing or violates an invariant."""

    status_code = 400
    code = "VALIDATION_ERROR"


class AuthenticationError(CalmeshError):
    """Credentials are invalid, expired, or cannot be refreshed."""

    status_code = 401
    code = "AUTHENTICATION_ERROR"


class NotFoundError(CalmeshError):
    """A calendar, canonical event, link, or account does not exist."""

    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: Optional[str] = None):
        message = f"{resource} not found: {resource_id}" if resource_id else f"{resource} not found"
        super().__init__(message)
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(CalmeshError):
    """A business rule rejected the request (e.g. invalid resolution arguments)."""

    status_code = 409
    code = "CONFLICT"


class ExternalApiError(CalmeshError):
    """A call to the calendar provider failed."""

    status_code = 502
    code = "EXTERNAL_API_ERROR"

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(f"Google Calendar API error: {message}")
        self.status = status


class EventNotFoundError(ExternalApiError):
    """The provider reports that an event no longer exists."""

    status_code = 404
    code = "EVENT_NOT_FOUND"

    def __init__(self, event_id: str, status: Optional[int] = 404):
        super().__init__(f"event {event_id} not found", status=status)
        self.event_id = event_id
