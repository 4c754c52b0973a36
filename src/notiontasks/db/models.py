"""SQLAlchemy ORM models for local SQLite database.

Tables:
- tasks, projects, time_logs, writing_entries, contacts: entity records
- sync_queue: Pending mutations to push to Notion (one per record)
- sync_state: Key/value sync bookkeeping (cursors, last sync times)
- sync_conflicts: Local field values that lost conflict resolution
"""

import json
from typing import Any, ClassVar, Optional
from uuid import uuid4

from sqlalchemy import BigInteger, Index, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from ..utils import now_ms
from .schemas import (
    EntityRecordResponse,
    EntityType,
    QueueEntryStatus,
    SyncQueueEntryResponse,
    SyncStatus,
)


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def generate_uuid() -> str:
    """Generate a UUID string for client IDs."""
    return str(uuid4())


def _load_json(value: Optional[str], default: Any) -> Any:
    if value:
        return json.loads(value)
    return default


def _dump_json(value: Any) -> Optional[str]:
    return json.dumps(value, sort_keys=True) if value is not None else None


class EntityRecordMixin:
    """Columns shared by every synced entity table."""

    entity_type: ClassVar[EntityType]

    # Primary key assigned locally, never changes
    client_id: Mapped[str] = mapped_column(String(36), primary_key=True, default=generate_uuid)

    # Assigned by Notion on first successful create
    notion_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True)

    payload: Mapped[str] = mapped_column(Text, default="{}")  # JSON
    synced_payload: Mapped[str] = mapped_column(Text, default="{}")  # JSON, last common state
    sync_status: Mapped[str] = mapped_column(
        String(20), default=SyncStatus.LOCAL.value, index=True
    )

    # Timestamps (ms since epoch)
    last_modified_local: Mapped[Optional[int]] = mapped_column(BigInteger)
    last_modified_notion: Mapped[Optional[int]] = mapped_column(BigInteger)
    field_local_ts: Mapped[str] = mapped_column(Text, default="{}")  # JSON field -> ms
    field_notion_ts: Mapped[str] = mapped_column(Text, default="{}")  # JSON field -> ms

    last_error: Mapped[Optional[str]] = mapped_column(Text)

    def __repr__(self) -> str:
        return (
            f"<{type(self).__name__}(client_id={self.client_id}, "
            f"notion_id={self.notion_id}, status={self.sync_status})>"
        )

    def get_payload(self) -> dict[str, Any]:
        """Get payload as dict."""
        return _load_json(self.payload, {})

    def set_payload(self, payload: dict[str, Any]) -> None:
        """Set payload from dict."""
        self.payload = _dump_json(payload or {})

    def get_synced_payload(self) -> dict[str, Any]:
        return _load_json(self.synced_payload, {})

    def set_synced_payload(self, payload: dict[str, Any]) -> None:
        self.synced_payload = _dump_json(payload or {})

    def get_field_local_ts(self) -> dict[str, int]:
        return _load_json(self.field_local_ts, {})

    def set_field_local_ts(self, stamps: dict[str, int]) -> None:
        self.field_local_ts = _dump_json(stamps or {})

    def get_field_notion_ts(self) -> dict[str, int]:
        return _load_json(self.field_notion_ts, {})

    def set_field_notion_ts(self, stamps: dict[str, int]) -> None:
        self.field_notion_ts = _dump_json(stamps or {})

    def to_response(self) -> EntityRecordResponse:
        """Convert to a response schema with decoded JSON columns."""
        return EntityRecordResponse(
            entity_type=self.entity_type,
            client_id=self.client_id,
            notion_id=self.notion_id,
            payload=self.get_payload(),
            sync_status=SyncStatus(self.sync_status),
            last_modified_local=self.last_modified_local,
            last_modified_notion=self.last_modified_notion,
            field_local_ts=self.get_field_local_ts(),
            field_notion_ts=self.get_field_notion_ts(),
            last_error=self.last_error,
        )


class Task(EntityRecordMixin, Base):
    """Task record."""

    __tablename__ = "tasks"
    entity_type = EntityType.TASK


class Project(EntityRecordMixin, Base):
    """Project record."""

    __tablename__ = "projects"
    entity_type = EntityType.PROJECT


class TimeLog(EntityRecordMixin, Base):
    """Time log record."""

    __tablename__ = "time_logs"
    entity_type = EntityType.TIME_LOG


class WritingEntry(EntityRecordMixin, Base):
    """Writing entry record."""

    __tablename__ = "writing_entries"
    entity_type = EntityType.WRITING


class Contact(EntityRecordMixin, Base):
    """Contact record."""

    __tablename__ = "contacts"
    entity_type = EntityType.CONTACT


RECORD_MODELS: dict[EntityType, type[EntityRecordMixin]] = {
    EntityType.TASK: Task,
    EntityType.PROJECT: Project,
    EntityType.TIME_LOG: TimeLog,
    EntityType.WRITING: WritingEntry,
    EntityType.CONTACT: Contact,
}


def model_for(entity_type: EntityType) -> type[EntityRecordMixin]:
    """Return the ORM model class for an entity type."""
    return RECORD_MODELS[EntityType(entity_type)]


class SyncQueueItem(Base):
    """Sync queue entry - one outstanding mutation per record."""

    __tablename__ = "sync_queue"
    __table_args__ = (
        UniqueConstraint("entity_type", "client_id", name="uq_sync_queue_entity"),
        Index("ix_sync_queue_pending_since", "pending_since"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    client_id: Mapped[str] = mapped_column(String(36), nullable=False)
    notion_id: Mapped[Optional[str]] = mapped_column(String(64))
    operation: Mapped[str] = mapped_column(String(10), nullable=False)  # create, update, delete
    payload: Mapped[str] = mapped_column(Text, default="{}")  # JSON snapshot
    changed_fields: Mapped[str] = mapped_column(Text, default="[]")  # JSON list
    status: Mapped[str] = mapped_column(
        String(10), default=QueueEntryStatus.PENDING.value, index=True
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    # Timestamps (ms since epoch)
    pending_since: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)
    next_attempt_at: Mapped[Optional[int]] = mapped_column(BigInteger)

    def __repr__(self) -> str:
        return (
            f"<SyncQueueItem(id={self.id}, entity={self.entity_type}/{self.client_id}, "
            f"op={self.operation})>"
        )

    def get_payload(self) -> dict[str, Any]:
        """Get payload as dict."""
        return _load_json(self.payload, {})

    def set_payload(self, payload: dict[str, Any]) -> None:
        """Set payload from dict."""
        self.payload = _dump_json(payload or {})

    def get_changed_fields(self) -> list[str]:
        """Get changed fields as list."""
        return _load_json(self.changed_fields, [])

    def set_changed_fields(self, fields: list[str]) -> None:
        """Set changed fields, de-duplicated and sorted."""
        self.changed_fields = json.dumps(sorted(set(fields or [])))

    def to_response(self) -> SyncQueueEntryResponse:
        return SyncQueueEntryResponse(
            id=self.id,
            entity_type=EntityType(self.entity_type),
            client_id=self.client_id,
            notion_id=self.notion_id,
            operation=self.operation,
            payload=self.get_payload(),
            changed_fields=self.get_changed_fields(),
            status=QueueEntryStatus(self.status),
            retry_count=self.retry_count,
            last_error=self.last_error,
            pending_since=self.pending_since,
            updated_at=self.updated_at,
            next_attempt_at=self.next_attempt_at,
        )


class SyncStateEntry(Base):
    """Key/value sync bookkeeping."""

    __tablename__ = "sync_state"

    key: Mapped[str] = mapped_column(String(100), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text)
    updated_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)

    def __repr__(self) -> str:
        return f"<SyncStateEntry(key={self.key}, value={self.value})>"


class FieldConflict(Base):
    """A local field value that was overridden during conflict resolution."""

    __tablename__ = "sync_conflicts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_type: Mapped[str] = mapped_column(String(20), nullable=False)
    client_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    field: Mapped[str] = mapped_column(String(200), nullable=False)
    local_value: Mapped[Optional[str]] = mapped_column(Text)  # JSON
    remote_value: Mapped[Optional[str]] = mapped_column(Text)  # JSON
    local_ts: Mapped[Optional[int]] = mapped_column(BigInteger)
    remote_ts: Mapped[Optional[int]] = mapped_column(BigInteger)
    winner: Mapped[str] = mapped_column(String(10), default="remote")
    resolved_at: Mapped[int] = mapped_column(BigInteger, default=now_ms)

    def __repr__(self) -> str:
        return (
            f"<FieldConflict(entity={self.entity_type}/{self.client_id}, "
            f"field={self.field}, winner={self.winner})>"
        )

    def get_local_value(self) -> Any:
        return _load_json(self.local_value, None)

    def get_remote_value(self) -> Any:
        return _load_json(self.remote_value, None)
