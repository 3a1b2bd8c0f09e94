"""ORM models exposed by the Flowsync application."""
from .entities import Flow, FlowEntry, UserProfile, UserSettings
from .sync_operation import SyncLogEntry, SyncQueueEntry

__all__ = [
    "Flow",
    "FlowEntry",
    "SyncLogEntry",
    "SyncQueueEntry",
    "UserProfile",
    "UserSettings",
]
