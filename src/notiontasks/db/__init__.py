"""Database module for local SQLite storage."""

from .models import (
    RECORD_MODELS,
    Contact,
    EntityRecordMixin,
    FieldConflict,
    Project,
    SyncQueueItem,
    SyncStateEntry,
    Task,
    TimeLog,
    WritingEntry,
    model_for,
)
from .schemas import (
    EntityType,
    QueueEntryStatus,
    SyncOperation,
    SyncStatus,
    parse_payload,
    payload_model_for,
    state_key,
)
from .sqlite import Database, UpsertResult, get_db, reset_db

__all__ = [
    "RECORD_MODELS",
    "Contact",
    "EntityRecordMixin",
    "FieldConflict",
    "Project",
    "SyncQueueItem",
    "SyncStateEntry",
    "Task",
    "TimeLog",
    "WritingEntry",
    "model_for",
    "EntityType",
    "QueueEntryStatus",
    "SyncOperation",
    "SyncStatus",
    "parse_payload",
    "payload_model_for",
    "state_key",
    "Database",
    "UpsertResult",
    "get_db",
    "reset_db",
]
