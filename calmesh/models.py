"""Domain records for canonical events, event links, calendars and connections."""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError

from calmesh.errors import ConflictError


class SyncDirection(str, Enum):
    """Which way events flow for a calendar."""

    BIDIRECTIONAL = "bidirectional"
    READONLY = "readonly"  # receives propagated events, its own changes stay local
    WRITEONLY = "writeonly"


class PrivacyMode(str, Enum):
    """How much detail a calendar receives."""

    DETAIL = "detail"
    BUSY_ONLY = "busy-only"


class LinkStatus(str, Enum):
    ACTIVE = "active"
    DELETED = "deleted"


class CanonicalEvent(BaseModel):
    """Provider-agnostic source of truth for one logical meeting."""

    id: str
    title: Optional[str] = None
    start_at: datetime
    end_at: datetime
    timezone: str = "UTC"
    location: Optional[str] = None
    description: Optional[str] = None
    all_day: bool = False
    last_modified_at: Optional[datetime] = None
    created_at: Optional[datetime] = None


class CanonicalEventUpdate(BaseModel):
    """
    Partial update for a canonical event.

    Only fields that were explicitly set are applied; a field set to None
    clears the stored value.
    """

    title: Optional[str] = None
    start_at: Optional[datetime] = None
    end_at: Optional[datetime] = None
    timezone: Optional[str] = None
    location: Optional[str] = None
    description: Optional[str] = None
    all_day: Optional[bool] = None

    def changes(self) -> dict[str, Any]:
        """Return the explicitly set fields."""
        return self.model_dump(exclude_unset=True)


class EventLink(BaseModel):
    """One mirror of a canonical event inside one (account, calendar) pair."""

    id: str
    canonical_event_id: str
    account_id: str
    calendar_id: str
    external_event_id: str = ""
    etag: str = ""
    content_hash: Optional[str] = None
    status: LinkStatus = LinkStatus.ACTIVE
    last_synced_at: Optional[datetime] = None
    last_sync_operation_id: Optional[str] = None
    origin_account_id: Optional[str] = None
    created_at: Optional[datetime] = None

    @field_validator("external_event_id", "etag", mode="before")
    @classmethod
    def _none_to_empty(cls, value):
        return value or ""

    @property
    def is_materialized(self) -> bool:
        return bool(self.external_event_id.strip())


class LinkUpdate(BaseModel):
    """Partial update for an event link; unset fields are left unchanged."""

    external_event_id: Optional[str] = None
    etag: Optional[str] = None
    content_hash: Optional[str] = None
    status: Optional[LinkStatus] = None
    last_synced_at: Optional[datetime] = None
    last_sync_operation_id: Optional[str] = None

    def changes(self) -> dict[str, Any]:
        """Return the explicitly set fields."""
        return self.model_dump(exclude_unset=True)


class Account(BaseModel):
    """A connected Google account; tokens stay encrypted."""

    id: str
    email: str
    access_token_encrypted: Optional[bytes] = None
    refresh_token_encrypted: Optional[bytes] = None
    token_expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Calendar(BaseModel):
    """Sync configuration for one external calendar under one account."""

    id: str
    account_id: str
    external_calendar_id: str
    name: Optional[str] = None
    sync_enabled: bool = True
    sync_direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    privacy_mode: PrivacyMode = PrivacyMode.DETAIL
    last_sync_cursor: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def propagates_outward(self) -> bool:
        return self.sync_enabled and self.sync_direction != SyncDirection.READONLY


class CalendarSettingsUpdate(BaseModel):
    """Settings a user may change on a calendar."""

    name: Optional[str] = None
    sync_enabled: Optional[bool] = None
    sync_direction: Optional[SyncDirection] = None
    privacy_mode: Optional[PrivacyMode] = None


class SyncConnection(BaseModel):
    """Undirected permission edge between two calendars."""

    id: str
    calendar_id_1: str
    calendar_id_2: str
    created_at: Optional[datetime] = None

    def other(self, calendar_id: str) -> str:
        """Return the calendar on the opposite end of the edge."""
        return self.calendar_id_2 if self.calendar_id_1 == calendar_id else self.calendar_id_1


# ---------------------------------------------------------------------------
# Conflicts
# ---------------------------------------------------------------------------


class VariantData(BaseModel):
    start: datetime
    end: datetime
    location: Optional[str] = None
    description: Optional[str] = None


class ConflictVariant(BaseModel):
    event_link_id: str
    account_email: str
    calendar_name: str
    data: VariantData
    last_modified: datetime


class Conflict(BaseModel):
    canonical_id: str
    title: str
    variants: list[ConflictVariant]


class AdoptResolution(BaseModel):
    """Adopt the live content of one linked copy as the new canonical truth."""

    strategy: Literal["adopt-A", "adopt-B"]
    adopt_link_id: str


class ManualResolution(BaseModel):
    """Apply explicitly chosen canonical fields."""

    strategy: Literal["manual"]
    manual_data: CanonicalEventUpdate


ConflictResolution = Annotated[
    Union[AdoptResolution, ManualResolution],
    Field(discriminator="strategy"),
]

_resolution_adapter = TypeAdapter(ConflictResolution)


def parse_resolution(data: Any) -> Union[AdoptResolution, ManualResolution]:
    """Validate a raw resolution request, rejecting bad strategies or missing data."""
    try:
        return _resolution_adapter.validate_python(data)
    except PydanticValidationError as e:
        raise ConflictError(f"Invalid conflict resolution: {e.errors()[0]['msg']}") from e


# ---------------------------------------------------------------------------
# Operation results
# ---------------------------------------------------------------------------


class ItemError(BaseModel):
    item_id: str
    error: str


class PropagationResult(BaseModel):
    """Outcome of one propagation run; partial success is expected."""

    canonical_id: str
    sync_operation_id: Optional[str] = None
    succeeded: list[str] = Field(default_factory=list)
    failed: list[ItemError] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)


class IngestionResult(BaseModel):
    """Outcome of one calendar sync pass."""

    calendar_id: str
    skipped: bool = False
    events_seen: int = 0
    processed: int = 0
    unchanged: int = 0
    self_reflections: int = 0
    failed: list[ItemError] = Field(default_factory=list)
    propagations: list[PropagationResult] = Field(default_factory=list)
