"""Sync engine module."""

from calmesh.sync.conflicts import ConflictResolver
from calmesh.sync.google_calendar import CalendarProvider, GoogleCalendarProvider
from calmesh.sync.hashing import compute_event_hash
from calmesh.sync.ingestion import IngestionEngine
from calmesh.sync.propagation import PropagationEngine, materialize_for_target

__all__ = [
    "CalendarProvider",
    "ConflictResolver",
    "GoogleCalendarProvider",
    "IngestionEngine",
    "PropagationEngine",
    "compute_event_hash",
    "materialize_for_target",
]
