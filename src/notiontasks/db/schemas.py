"""Pydantic schemas for data validation.

These schemas describe the synced entities (tasks, projects, time logs,
writing entries, contacts), the sync queue and their status enums.
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field


class EntityType(str, Enum):
    """Kinds of records synchronized with Notion."""

    TASK = "task"
    PROJECT = "project"
    TIME_LOG = "time_log"
    WRITING = "writing"
    CONTACT = "contact"


class SyncStatus(str, Enum):
    """Sync status of a local entity record."""

    LOCAL = "local"  # Created locally, never pushed
    PENDING = "pending"  # Local changes waiting in the queue
    SYNCED = "synced"  # Matches the last known remote state
    ERROR = "error"  # Last push failed terminally
    TRASHED = "trashed"  # Remote page no longer exists


class SyncOperation(str, Enum):
    """Type of sync operation."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class QueueEntryStatus(str, Enum):
    """Status of sync queue entries."""

    PENDING = "pending"
    ERROR = "error"  # Out of the retry rotation until retried manually


# ============================================================================
# Entity Payloads
# ============================================================================


class EntityPayload(BaseModel):
    """Base payload: interpreted fields plus an opaque bag of remote extras."""

    model_config = ConfigDict(extra="allow")

    title: Optional[str] = None

    @property
    def extras(self) -> dict[str, Any]:
        """Fields not interpreted by this entity type."""
        return dict(self.model_extra or {})


class TaskPayload(EntityPayload):
    """Task fields."""

    status: Optional[str] = None
    date: Optional[str] = None  # due date, ISO


class ProjectPayload(EntityPayload):
    """Project fields."""

    status: Optional[str] = None
    date: Optional[str] = None  # deadline, ISO


class TimeLogPayload(EntityPayload):
    """Time log fields."""

    date: Optional[str] = None


class WritingPayload(EntityPayload):
    """Writing entry fields."""

    status: Optional[str] = None
    date: Optional[str] = None


class ContactPayload(EntityPayload):
    """Contact fields (name only; everything else rides in the extras)."""


PAYLOAD_MODELS: dict[EntityType, type[EntityPayload]] = {
    EntityType.TASK: TaskPayload,
    EntityType.PROJECT: ProjectPayload,
    EntityType.TIME_LOG: TimeLogPayload,
    EntityType.WRITING: WritingPayload,
    EntityType.CONTACT: ContactPayload,
}


def payload_model_for(entity_type: EntityType) -> type[EntityPayload]:
    """Return the payload model class for an entity type."""
    return PAYLOAD_MODELS[EntityType(entity_type)]


def parse_payload(entity_type: EntityType, data: dict[str, Any]) -> EntityPayload:
    """Build a typed payload from a plain dict, keeping unknown fields."""
    return payload_model_for(entity_type).model_validate(data)


# ============================================================================
# Response Schemas
# ============================================================================


class EntityRecordResponse(BaseModel):
    """Schema for entity record responses."""

    model_config = ConfigDict(from_attributes=True)

    entity_type: EntityType
    client_id: str
    notion_id: Optional[str] = None
    payload: dict[str, Any] = Field(default_factory=dict)
    sync_status: SyncStatus
    last_modified_local: Optional[int] = None
    last_modified_notion: Optional[int] = None
    field_local_ts: dict[str, int] = Field(default_factory=dict)
    field_notion_ts: dict[str, int] = Field(default_factory=dict)
    last_error: Optional[str] = None

    def typed_payload(self) -> EntityPayload:
        return parse_payload(self.entity_type, self.payload)


class SyncQueueEntryResponse(BaseModel):
    """Schema for sync queue entry responses."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    entity_type: EntityType
    client_id: str
    notion_id: Optional[str] = None
    operation: SyncOperation
    payload: dict[str, Any] = Field(default_factory=dict)
    changed_fields: list[str] = Field(default_factory=list)
    status: QueueEntryStatus = QueueEntryStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    pending_since: int
    updated_at: int
    next_attempt_at: Optional[int] = None


def state_key(entity_type: EntityType, name: str) -> str:
    """Key in the sync_state table for a per-entity value (e.g. ``task:cursor``)."""
    return f"{EntityType(entity_type).value}:{name}"
