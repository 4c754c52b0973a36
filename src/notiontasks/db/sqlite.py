"""SQLite database operations.

Handles database connection, session management, entity record CRUD,
the sync queue, sync state bookkeeping and the conflict audit log.
"""

import json
import logging
import os
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Generator, Optional

from sqlalchemy import create_engine, delete, event, func, select
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ..utils import now_ms
from .models import (
    Base,
    EntityRecordMixin,
    FieldConflict,
    SyncQueueItem,
    SyncStateEntry,
    generate_uuid,
    model_for,
)
from .schemas import EntityType, QueueEntryStatus, SyncOperation, SyncStatus

logger = logging.getLogger(__name__)


@dataclass
class UpsertResult:
    """Result of applying one remote record to the local store."""

    record: Optional[EntityRecordMixin]
    created: bool = False
    skipped: bool = False  # page is being deleted locally
    changed_fields: list[str] = field(default_factory=list)
    overridden_fields: list[str] = field(default_factory=list)


class Database:
    """Database connection and operations manager."""

    def __init__(
        self,
        db_path: Optional[str] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        """Initialize database connection.

        Args:
            db_path: Path to SQLite database file. If None, uses
                     NOTIONTASKS_DB_PATH env var or default location.
            clock: Millisecond clock used for local timestamps (now_ms if not provided)
        """
        if db_path is None:
            db_path = os.environ.get(
                "NOTIONTASKS_DB_PATH",
                str(Path.home() / ".notiontasks" / "notiontasks.db"),
            )

        self.db_path = Path(db_path)
        self.clock = clock or now_ms
        self._is_memory = str(db_path) == ":memory:"

        if not self._is_memory:
            self._ensure_directory()

        # For in-memory databases, use StaticPool to reuse the same connection
        # This ensures all sessions share the same in-memory database
        if self._is_memory:
            self.engine = create_engine(
                "sqlite:///:memory:",
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                f"sqlite:///{self.db_path}",
                echo=False,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
            event.listen(self.engine, "connect", _enable_wal)
        self.SessionLocal = sessionmaker(bind=self.engine, autocommit=False, autoflush=False)

    def _ensure_directory(self) -> None:
        """Ensure the database directory exists."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

    def create_tables(self) -> None:
        """Create all database tables."""
        Base.metadata.create_all(self.engine)

    def drop_tables(self) -> None:
        """Drop all database tables. Use with caution!"""
        Base.metadata.drop_all(self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """Get a database session context manager."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _run(self, op: Callable[[Session], Any], session: Optional[Session] = None) -> Any:
        """Run op in the given session, or in its own transaction.

        Objects returned from a private transaction are detached so they stay
        readable after the session closes.
        """
        if session:
            return op(session)
        with self.get_session() as s:
            result = op(s)
            s.flush()
            _detach(s, result)
            return result

    # ========================================================================
    # Entity Record Operations
    # ========================================================================

    def get_by_id(
        self, entity_type: EntityType, client_id: str, session: Optional[Session] = None
    ) -> Optional[EntityRecordMixin]:
        """Get a record by client ID."""

        def _get(s: Session) -> Optional[EntityRecordMixin]:
            return s.get(model_for(entity_type), client_id)

        return self._run(_get, session)

    def get_by_notion_id(
        self, entity_type: EntityType, notion_id: str, session: Optional[Session] = None
    ) -> Optional[EntityRecordMixin]:
        """Get a record by its Notion page ID."""

        def _get(s: Session) -> Optional[EntityRecordMixin]:
            model = model_for(entity_type)
            stmt = select(model).where(model.notion_id == notion_id)
            return s.execute(stmt).scalar_one_or_none()

        return self._run(_get, session)

    def list_by_sync_status(
        self,
        entity_type: EntityType,
        status: SyncStatus,
        session: Optional[Session] = None,
    ) -> list[EntityRecordMixin]:
        """Get all records of a type with the given sync status."""

        def _get(s: Session) -> list[EntityRecordMixin]:
            model = model_for(entity_type)
            stmt = (
                select(model)
                .where(model.sync_status == SyncStatus(status).value)
                .order_by(model.last_modified_local, model.client_id)
            )
            return list(s.execute(stmt).scalars().all())

        return self._run(_get, session)

    def list_all(
        self, entity_type: EntityType, session: Optional[Session] = None
    ) -> list[EntityRecordMixin]:
        """Get all records of a type."""

        def _get(s: Session) -> list[EntityRecordMixin]:
            model = model_for(entity_type)
            return list(s.execute(select(model).order_by(model.client_id)).scalars().all())

        return self._run(_get, session)

    def count_records(
        self,
        entity_type: EntityType,
        status: Optional[SyncStatus] = None,
        session: Optional[Session] = None,
    ) -> int:
        """Count records of a type, optionally filtered by sync status."""

        def _count(s: Session) -> int:
            model = model_for(entity_type)
            stmt = select(func.count()).select_from(model)
            if status is not None:
                stmt = stmt.where(model.sync_status == SyncStatus(status).value)
            return s.execute(stmt).scalar_one()

        return self._run(_count, session)

    def create_local(
        self,
        entity_type: EntityType,
        payload: dict[str, Any],
        client_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> EntityRecordMixin:
        """Create a record from a local user action.

        The record starts as ``local`` with no Notion ID, and a ``create``
        entry is queued carrying every payload field.
        """

        def _create(s: Session) -> EntityRecordMixin:
            now = self.clock()
            record = model_for(entity_type)(
                client_id=client_id or generate_uuid(),
                notion_id=None,
                sync_status=SyncStatus.LOCAL.value,
                last_modified_local=now,
                last_modified_notion=None,
                last_error=None,
            )
            record.set_payload(payload)
            record.set_synced_payload({})
            record.set_field_local_ts({name: now for name in payload})
            record.set_field_notion_ts({})
            s.add(record)
            s.flush()

            self._enqueue(s, record, SyncOperation.CREATE, list(payload), now)
            return record

        return self._run(_create, session)

    def apply_local_mutation(
        self,
        entity_type: EntityType,
        client_id: str,
        changed_fields: list[str],
        new_payload: dict[str, Any],
        session: Optional[Session] = None,
    ) -> Optional[EntityRecordMixin]:
        """Apply a local edit and queue it for push.

        Args:
            entity_type: Type of the record
            client_id: Record to modify
            changed_fields: Names of the fields the user changed
            new_payload: New field values; a changed field missing here is removed

        Returns:
            Updated record, or None if it does not exist
        """

        def _update(s: Session) -> Optional[EntityRecordMixin]:
            record = s.get(model_for(entity_type), client_id)
            if not record:
                return None

            now = self.clock()
            payload = record.get_payload()
            local_ts = record.get_field_local_ts()
            notion_ts = record.get_field_notion_ts()

            for name in changed_fields:
                if name in new_payload:
                    payload[name] = new_payload[name]
                else:
                    payload.pop(name, None)
                # Keep the local stamp strictly newer than the last remote one
                local_ts[name] = max(now, notion_ts.get(name, 0) + 1)

            record.set_payload(payload)
            record.set_field_local_ts(local_ts)
            record.last_modified_local = now
            record.sync_status = SyncStatus.PENDING.value

            operation = SyncOperation.UPDATE if record.notion_id else SyncOperation.CREATE
            self._enqueue(s, record, operation, changed_fields, now)
            return record

        return self._run(_update, session)

    def upsert_from_remote(
        self,
        entity_type: EntityType,
        notion_id: str,
        payload: dict[str, Any],
        remote_timestamp: int,
        field_timestamps: Optional[dict[str, int]] = None,
        session: Optional[Session] = None,
    ) -> UpsertResult:
        """Merge a freshly pulled remote record into the local store.

        Records are matched by Notion ID and created as ``synced`` when absent.
        Pages whose local record was deleted and whose archive is still queued
        are skipped.
        Field timestamps only move for fields whose value actually changed,
        so applying the same remote version twice is a no-op. When the record
        has an outstanding queue entry the two sides are merged field by field;
        local edits that lose are dropped from the entry and logged to
        ``sync_conflicts``.

        Args:
            entity_type: Type of the record
            notion_id: Notion page ID
            payload: Remote field values
            remote_timestamp: Remote last-edited time in ms
            field_timestamps: Optional per-field remote edit times in ms

        Returns:
            UpsertResult with the record and the fields that changed locally
        """
        from ..sync.conflict import FieldSource, RemoteChange, resolve

        def _upsert(s: Session) -> UpsertResult:
            model = model_for(entity_type)
            record = s.execute(
                select(model).where(model.notion_id == notion_id)
            ).scalar_one_or_none()

            def stamp(name: str) -> int:
                if field_timestamps and name in field_timestamps:
                    return field_timestamps[name]
                return remote_timestamp

            if record is None:
                if self._has_pending_delete(s, entity_type, notion_id):
                    return UpsertResult(record=None, skipped=True)
                record = model(
                    client_id=generate_uuid(),
                    notion_id=notion_id,
                    sync_status=SyncStatus.SYNCED.value,
                    last_modified_local=None,
                    last_modified_notion=remote_timestamp,
                    last_error=None,
                )
                record.set_payload(payload)
                record.set_synced_payload(payload)
                record.set_field_local_ts({})
                record.set_field_notion_ts({name: stamp(name) for name in payload})
                s.add(record)
                s.flush()
                return UpsertResult(record=record, created=True, changed_fields=sorted(payload))

            if record.last_modified_notion and remote_timestamp < record.last_modified_notion:
                # Older than what we already have
                return UpsertResult(record=record)

            current = record.get_payload()
            synced = record.get_synced_payload()
            notion_ts = record.get_field_notion_ts()
            entry = self._get_entry(s, entity_type, record.client_id)

            overridden: list[str] = []
            if entry is None:
                merged = dict(current)
                changed = []
                for name, value in payload.items():
                    if name not in current or current[name] != value:
                        changed.append(name)
                        merged[name] = value
                        notion_ts[name] = stamp(name)
            else:
                resolution = resolve(
                    record, RemoteChange(payload, remote_timestamp, field_timestamps)
                )
                merged = resolution.merged_payload
                for name in resolution.remote_changed:
                    if resolution.field_sources[name] == FieldSource.REMOTE:
                        notion_ts[name] = stamp(name)
                changed = sorted(
                    name for name in merged if current.get(name) != merged[name]
                )
                overridden = resolution.overridden_fields(entry.get_changed_fields())
                self._log_overrides(s, record, overridden, current, payload, stamp)
                self._narrow_entry(s, entry, overridden, merged)

            synced.update(payload)
            record.set_payload(merged)
            record.set_synced_payload(synced)
            record.set_field_notion_ts(notion_ts)
            record.last_modified_notion = max(record.last_modified_notion or 0, remote_timestamp)

            if self._get_entry(s, entity_type, record.client_id) is None:
                record.sync_status = SyncStatus.SYNCED.value
                record.last_error = None

            return UpsertResult(
                record=record, changed_fields=sorted(changed), overridden_fields=overridden
            )

        return self._run(_upsert, session)

    def delete(
        self, entity_type: EntityType, client_id: str, session: Optional[Session] = None
    ) -> bool:
        """Delete a record and cancel its queue entry.

        If the record exists in Notion, a ``delete`` entry carrying the Notion
        ID is queued so the remote page gets archived.
        """

        def _delete(s: Session) -> bool:
            record = s.get(model_for(entity_type), client_id)
            if not record:
                return False

            entry = self._get_entry(s, entity_type, client_id)
            if entry:
                s.delete(entry)
                s.flush()

            if record.notion_id and record.sync_status != SyncStatus.TRASHED.value:
                now = self.clock()
                s.add(
                    SyncQueueItem(
                        entity_type=EntityType(entity_type).value,
                        client_id=client_id,
                        notion_id=record.notion_id,
                        operation=SyncOperation.DELETE.value,
                        payload="{}",
                        changed_fields="[]",
                        status=QueueEntryStatus.PENDING.value,
                        retry_count=0,
                        pending_since=now,
                        updated_at=now,
                    )
                )

            s.delete(record)
            return True

        return self._run(_delete, session)

    def restore_from_trash(
        self, entity_type: EntityType, client_id: str, session: Optional[Session] = None
    ) -> Optional[EntityRecordMixin]:
        """Re-create a trashed record in Notion as a new page."""

        def _restore(s: Session) -> Optional[EntityRecordMixin]:
            record = s.get(model_for(entity_type), client_id)
            if not record or record.sync_status != SyncStatus.TRASHED.value:
                return None

            now = self.clock()
            payload = record.get_payload()
            record.notion_id = None
            record.sync_status = SyncStatus.LOCAL.value
            record.last_modified_local = now
            record.last_error = None
            record.set_synced_payload({})
            record.set_field_notion_ts({})
            record.set_field_local_ts({name: now for name in payload})
            self._enqueue(s, record, SyncOperation.CREATE, list(payload), now)
            return record

        return self._run(_restore, session)

    # ========================================================================
    # Sync Queue Operations
    # ========================================================================

    def _get_entry(
        self, session: Session, entity_type: EntityType, client_id: str
    ) -> Optional[SyncQueueItem]:
        stmt = select(SyncQueueItem).where(
            SyncQueueItem.entity_type == EntityType(entity_type).value,
            SyncQueueItem.client_id == client_id,
        )
        return session.execute(stmt).scalar_one_or_none()

    def _has_pending_delete(
        self, session: Session, entity_type: EntityType, notion_id: str
    ) -> bool:
        stmt = select(SyncQueueItem.id).where(
            SyncQueueItem.entity_type == EntityType(entity_type).value,
            SyncQueueItem.notion_id == notion_id,
            SyncQueueItem.operation == SyncOperation.DELETE.value,
        )
        return session.execute(stmt.limit(1)).first() is not None

    def _enqueue(
        self,
        session: Session,
        record: EntityRecordMixin,
        operation: SyncOperation,
        changed_fields: list[str],
        now: int,
    ) -> SyncQueueItem:
        """Add a mutation to the sync queue, coalescing with any existing entry."""
        existing = self._get_entry(session, record.entity_type, record.client_id)

        if existing:
            # A create that was never pushed stays a create
            if existing.operation != SyncOperation.CREATE.value:
                existing.operation = operation.value
            existing.notion_id = existing.notion_id or record.notion_id
            existing.set_payload(record.get_payload())
            existing.set_changed_fields(existing.get_changed_fields() + list(changed_fields))
            existing.status = QueueEntryStatus.PENDING.value
            existing.updated_at = max(now, existing.updated_at + 1)
            return existing

        queue_item = SyncQueueItem(
            entity_type=record.entity_type.value,
            client_id=record.client_id,
            notion_id=record.notion_id,
            operation=operation.value,
            status=QueueEntryStatus.PENDING.value,
            retry_count=0,
            pending_since=now,
            updated_at=now,
            next_attempt_at=None,
        )
        queue_item.set_payload(record.get_payload())
        queue_item.set_changed_fields(changed_fields)
        session.add(queue_item)
        session.flush()
        return queue_item

    def _narrow_entry(
        self,
        session: Session,
        entry: SyncQueueItem,
        overridden: list[str],
        merged: dict[str, Any],
    ) -> None:
        """Drop remote-winning fields from a queue entry."""
        remaining = [f for f in entry.get_changed_fields() if f not in overridden]
        if not remaining and entry.operation == SyncOperation.UPDATE.value:
            session.delete(entry)
            session.flush()
            return
        entry.set_changed_fields(remaining)
        entry.set_payload(merged)

    def _log_overrides(
        self,
        session: Session,
        record: EntityRecordMixin,
        overridden: list[str],
        local_payload: dict[str, Any],
        remote_payload: dict[str, Any],
        stamp: Callable[[str], int],
    ) -> None:
        local_ts = record.get_field_local_ts()
        for name in overridden:
            local_value = local_payload.get(name)
            remote_value = remote_payload.get(name)
            if local_value == remote_value:
                continue
            logger.info(
                "Remote value of %s.%s overrides local edit (%s)",
                record.entity_type.value,
                name,
                record.client_id,
            )
            session.add(
                FieldConflict(
                    entity_type=record.entity_type.value,
                    client_id=record.client_id,
                    field=name,
                    local_value=json.dumps(local_value),
                    remote_value=json.dumps(remote_value),
                    local_ts=local_ts.get(name),
                    remote_ts=stamp(name),
                    winner="remote",
                    resolved_at=self.clock(),
                )
            )

    def get_queue_entry(
        self, entry_id: int, session: Optional[Session] = None
    ) -> Optional[SyncQueueItem]:
        """Get a queue entry by ID."""

        def _get(s: Session) -> Optional[SyncQueueItem]:
            return s.get(SyncQueueItem, entry_id)

        return self._run(_get, session)

    def get_entry_for(
        self, entity_type: EntityType, client_id: str, session: Optional[Session] = None
    ) -> Optional[SyncQueueItem]:
        """Get the outstanding queue entry for a record, if any."""

        def _get(s: Session) -> Optional[SyncQueueItem]:
            return self._get_entry(s, entity_type, client_id)

        return self._run(_get, session)

    def list_queue_entries(
        self,
        entity_type: Optional[EntityType] = None,
        status: Optional[QueueEntryStatus] = None,
        session: Optional[Session] = None,
    ) -> list[SyncQueueItem]:
        """Get queue entries in FIFO order."""

        def _get(s: Session) -> list[SyncQueueItem]:
            stmt = select(SyncQueueItem)
            if entity_type is not None:
                stmt = stmt.where(SyncQueueItem.entity_type == EntityType(entity_type).value)
            if status is not None:
                stmt = stmt.where(SyncQueueItem.status == QueueEntryStatus(status).value)
            stmt = stmt.order_by(SyncQueueItem.pending_since, SyncQueueItem.id)
            return list(s.execute(stmt).scalars().all())

        return self._run(_get, session)

    def list_eligible_entries(
        self,
        entity_type: EntityType,
        now: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> list[SyncQueueItem]:
        """Get pending entries whose backoff has elapsed, in FIFO order."""

        def _get(s: Session) -> list[SyncQueueItem]:
            current = self.clock() if now is None else now
            stmt = (
                select(SyncQueueItem)
                .where(
                    SyncQueueItem.entity_type == EntityType(entity_type).value,
                    SyncQueueItem.status == QueueEntryStatus.PENDING.value,
                    (SyncQueueItem.next_attempt_at.is_(None))
                    | (SyncQueueItem.next_attempt_at <= current),
                )
                .order_by(SyncQueueItem.pending_since, SyncQueueItem.id)
            )
            return list(s.execute(stmt).scalars().all())

        return self._run(_get, session)

    def count_queue_entries(
        self,
        entity_type: Optional[EntityType] = None,
        status: Optional[QueueEntryStatus] = None,
        session: Optional[Session] = None,
    ) -> int:
        """Count queue entries."""

        def _count(s: Session) -> int:
            stmt = select(func.count()).select_from(SyncQueueItem)
            if entity_type is not None:
                stmt = stmt.where(SyncQueueItem.entity_type == EntityType(entity_type).value)
            if status is not None:
                stmt = stmt.where(SyncQueueItem.status == QueueEntryStatus(status).value)
            return s.execute(stmt).scalar_one()

        return self._run(_count, session)

    def complete_push(
        self,
        entry_id: int,
        notion_id: Optional[str],
        remote_timestamp: Optional[int],
        pushed_payload: dict[str, Any],
        expected_updated_at: int,
        session: Optional[Session] = None,
    ) -> Optional[EntityRecordMixin]:
        """Record a confirmed remote write.

        The entry is deleted and the record marked ``synced``. If another
        local edit was coalesced into the entry while the push was in
        flight, the entry is kept for the fields that still differ.

        Args:
            entry_id: Queue entry that was pushed
            notion_id: Notion page ID returned by the write
            remote_timestamp: Page last_edited_time after the write, in ms
            pushed_payload: Field values that were sent
            expected_updated_at: Entry updated_at read before the push

        Returns:
            The updated record (None for deletes or vanished records)
        """

        def _complete(s: Session) -> Optional[EntityRecordMixin]:
            entry = s.get(SyncQueueItem, entry_id)
            if not entry:
                return None

            if entry.operation == SyncOperation.DELETE.value:
                s.delete(entry)
                return None

            record = s.get(model_for(entry.entity_type), entry.client_id)
            if not record:
                s.delete(entry)
                return None

            remote_ts = remote_timestamp or self.clock()
            if notion_id and not record.notion_id:
                record.notion_id = notion_id

            payload = record.get_payload()
            synced = record.get_synced_payload()
            local_ts = record.get_field_local_ts()
            notion_ts = record.get_field_notion_ts()
            for name, value in pushed_payload.items():
                synced[name] = value
                if payload.get(name) == value:
                    notion_ts[name] = max(remote_ts, local_ts.get(name, 0))
            record.set_synced_payload(synced)
            record.set_field_notion_ts(notion_ts)
            record.last_modified_notion = max(record.last_modified_notion or 0, remote_ts)
            record.last_error = None

            if entry.updated_at == expected_updated_at:
                s.delete(entry)
                record.sync_status = SyncStatus.SYNCED.value
                return record

            remaining = [
                f
                for f in entry.get_changed_fields()
                if f not in pushed_payload or payload.get(f) != pushed_payload[f]
            ]
            if not remaining:
                s.delete(entry)
                record.sync_status = SyncStatus.SYNCED.value
                return record

            entry.operation = SyncOperation.UPDATE.value
            entry.notion_id = record.notion_id
            entry.set_changed_fields(remaining)
            entry.set_payload(payload)
            record.sync_status = SyncStatus.PENDING.value
            return record

        return self._run(_complete, session)

    def record_retryable_failure(
        self,
        entry_id: int,
        error: str,
        next_attempt_at: int,
        max_retries: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> Optional[SyncQueueItem]:
        """Count a transient push failure and schedule the next attempt.

        Once ``max_retries`` is reached the entry leaves the retry rotation
        (status ``error``) until retried manually.
        """

        def _mark(s: Session) -> Optional[SyncQueueItem]:
            entry = s.get(SyncQueueItem, entry_id)
            if not entry:
                return None

            entry.retry_count += 1
            entry.last_error = error
            entry.next_attempt_at = next_attempt_at
            entry.updated_at = max(self.clock(), entry.updated_at + 1)

            if max_retries is not None and entry.retry_count >= max_retries:
                entry.status = QueueEntryStatus.ERROR.value
                record = s.get(model_for(entry.entity_type), entry.client_id)
                if record:
                    record.sync_status = SyncStatus.ERROR.value
                    record.last_error = f"Retries exhausted: {error}"
            return entry

        return self._run(_mark, session)

    def record_terminal_failure(
        self, entry_id: int, error: str, session: Optional[Session] = None
    ) -> Optional[SyncQueueItem]:
        """Mark an entry and its record as failed; the entry stays for manual retry."""

        def _mark(s: Session) -> Optional[SyncQueueItem]:
            entry = s.get(SyncQueueItem, entry_id)
            if not entry:
                return None

            entry.status = QueueEntryStatus.ERROR.value
            entry.last_error = error
            entry.updated_at = max(self.clock(), entry.updated_at + 1)

            record = s.get(model_for(entry.entity_type), entry.client_id)
            if record:
                record.sync_status = SyncStatus.ERROR.value
                record.last_error = error
            return entry

        return self._run(_mark, session)

    def mark_remote_missing(self, entry_id: int, session: Optional[Session] = None) -> bool:
        """Handle a push whose Notion page no longer exists.

        The record is kept as ``trashed`` and the entry is removed.
        """

        def _mark(s: Session) -> bool:
            entry = s.get(SyncQueueItem, entry_id)
            if not entry:
                return False

            record = s.get(model_for(entry.entity_type), entry.client_id)
            if record:
                record.sync_status = SyncStatus.TRASHED.value
                record.last_error = "Page was deleted in Notion"
            s.delete(entry)
            return True

        return self._run(_mark, session)

    def retry_entry(self, entry_id: int, session: Optional[Session] = None) -> bool:
        """Manually reset an entry so the next drain picks it up."""

        def _retry(s: Session) -> bool:
            entry = s.get(SyncQueueItem, entry_id)
            if not entry:
                return False
            self._reset_entry(s, entry)
            return True

        return self._run(_retry, session)

    def retry_failed_entries(
        self, entity_type: Optional[EntityType] = None, session: Optional[Session] = None
    ) -> int:
        """Reset every ``error`` entry (optionally of one type). Returns the count."""

        def _retry(s: Session) -> int:
            stmt = select(SyncQueueItem).where(
                SyncQueueItem.status == QueueEntryStatus.ERROR.value
            )
            if entity_type is not None:
                stmt = stmt.where(SyncQueueItem.entity_type == EntityType(entity_type).value)
            entries = list(s.execute(stmt).scalars().all())
            for entry in entries:
                self._reset_entry(s, entry)
            return len(entries)

        return self._run(_retry, session)

    def _reset_entry(self, session: Session, entry: SyncQueueItem) -> None:
        entry.status = QueueEntryStatus.PENDING.value
        entry.retry_count = 0
        entry.next_attempt_at = None
        entry.last_error = None
        entry.updated_at = max(self.clock(), entry.updated_at + 1)

        record = session.get(model_for(entry.entity_type), entry.client_id)
        if record:
            record.sync_status = (
                SyncStatus.PENDING.value if record.notion_id else SyncStatus.LOCAL.value
            )
            record.last_error = None

    def clear_queue(
        self, entity_type: Optional[EntityType] = None, session: Optional[Session] = None
    ) -> int:
        """Discard queued mutations (optionally of one type). Returns the count."""

        def _clear(s: Session) -> int:
            stmt = delete(SyncQueueItem)
            if entity_type is not None:
                stmt = stmt.where(SyncQueueItem.entity_type == EntityType(entity_type).value)
            return s.execute(stmt).rowcount

        return self._run(_clear, session)

    # ========================================================================
    # Sync State Operations
    # ========================================================================

    def get_sync_state(self, key: str, session: Optional[Session] = None) -> Optional[str]:
        """Get a sync state value."""

        def _get(s: Session) -> Optional[str]:
            entry = s.get(SyncStateEntry, key)
            return entry.value if entry else None

        return self._run(_get, session)

    def set_sync_state(
        self, key: str, value: Optional[str], session: Optional[Session] = None
    ) -> None:
        """Set (insert or replace) a sync state value."""

        def _set(s: Session) -> None:
            entry = s.get(SyncStateEntry, key)
            if entry:
                entry.value = value
                entry.updated_at = self.clock()
            else:
                s.add(SyncStateEntry(key=key, value=value, updated_at=self.clock()))

        self._run(_set, session)

    def clear_sync_state(self, key: str, session: Optional[Session] = None) -> None:
        """Remove a sync state value."""

        def _clear(s: Session) -> None:
            s.execute(delete(SyncStateEntry).where(SyncStateEntry.key == key))

        self._run(_clear, session)

    def clear_sync_state_prefix(self, prefix: str, session: Optional[Session] = None) -> int:
        """Remove every sync state key starting with prefix. Returns the count."""

        def _clear(s: Session) -> int:
            stmt = delete(SyncStateEntry).where(SyncStateEntry.key.startswith(prefix))
            return s.execute(stmt).rowcount

        return self._run(_clear, session)

    def list_sync_state(self, session: Optional[Session] = None) -> dict[str, Optional[str]]:
        """All sync state values by key."""

        def _get(s: Session) -> dict[str, Optional[str]]:
            rows = s.execute(select(SyncStateEntry).order_by(SyncStateEntry.key)).scalars()
            return {row.key: row.value for row in rows}

        return self._run(_get, session)

    # ========================================================================
    # Conflict Log
    # ========================================================================

    def list_conflicts(
        self,
        entity_type: Optional[EntityType] = None,
        client_id: Optional[str] = None,
        session: Optional[Session] = None,
    ) -> list[FieldConflict]:
        """Get logged conflicts, newest first."""

        def _get(s: Session) -> list[FieldConflict]:
            stmt = select(FieldConflict)
            if entity_type is not None:
                stmt = stmt.where(FieldConflict.entity_type == EntityType(entity_type).value)
            if client_id is not None:
                stmt = stmt.where(FieldConflict.client_id == client_id)
            stmt = stmt.order_by(FieldConflict.resolved_at.desc(), FieldConflict.id.desc())
            return list(s.execute(stmt).scalars().all())

        return self._run(_get, session)


def _enable_wal(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _detach(session: Session, result: Any) -> None:
    """Expunge ORM objects in a result from the session."""
    if isinstance(result, UpsertResult):
        result = result.record
    items = result if isinstance(result, list) else [result]
    for item in items:
        if isinstance(item, Base) and item in session:
            session.expunge(item)


# Global database instance
_db: Optional[Database] = None


def get_db(db_path: Optional[str] = None) -> Database:
    """Get or create the global database instance."""
    global _db
    if _db is None:
        _db = Database(db_path)
        _db.create_tables()
    return _db


def reset_db() -> None:
    """Reset the global database instance. Used for testing."""
    global _db
    _db = None
