"""Multi-account Google Calendar synchronization with conflict reconciliation."""

__version__ = "1.0.0"
