"""Tests for SQLite database operations."""

import pytest

from src.notiontasks.db.schemas import (
    EntityType,
    QueueEntryStatus,
    SyncOperation,
    SyncStatus,
)
from src.notiontasks.db.sqlite import Database

TASK = EntityType.TASK


def pulled_task(db: Database, title: str = "Write report", ts: int = 1_000) -> str:
    """Insert a task as if pulled from Notion; returns its client ID."""
    result = db.upsert_from_remote(TASK, "page-1", {"title": title, "status": "Todo"}, ts)
    return result.record.client_id


class TestDatabaseInit:
    """Tests for database initialization."""

    def test_create_tables(self, temp_db_path):
        """Test that tables are created."""
        db = Database(str(temp_db_path))
        db.create_tables()

        assert temp_db_path.exists()
        assert db.count_records(TASK) == 0
        assert db.count_queue_entries() == 0

    def test_in_memory_database(self):
        """Test in-memory database shares one connection."""
        db = Database(":memory:")
        db.create_tables()
        db.create_local(TASK, {"title": "In memory"})

        assert db.count_records(TASK) == 1

    def test_entity_tables_are_separate(self, db):
        """Test each entity type has its own table."""
        db.create_local(TASK, {"title": "A task"})
        db.create_local(EntityType.PROJECT, {"title": "A project"})

        assert db.count_records(TASK) == 1
        assert db.count_records(EntityType.PROJECT) == 1
        assert db.count_records(EntityType.CONTACT) == 0


class TestLocalMutations:
    """Tests for local creates and edits."""

    def test_create_local(self, db, clock):
        """Test creating a record queues a create."""
        record = db.create_local(TASK, {"title": "Buy milk", "status": "Todo"})

        assert record.sync_status == SyncStatus.LOCAL.value
        assert record.notion_id is None
        assert record.get_field_local_ts() == {"status": clock.now, "title": clock.now}

        entries = db.list_queue_entries()
        assert len(entries) == 1
        assert entries[0].operation == SyncOperation.CREATE.value
        assert entries[0].get_changed_fields() == ["status", "title"]
        assert entries[0].get_payload() == {"title": "Buy milk", "status": "Todo"}

    def test_edit_coalesces_into_create(self, db, clock):
        """Test edits before the first push stay a single create entry."""
        record = db.create_local(TASK, {"title": "Buy milk"})
        clock.advance(100)
        db.apply_local_mutation(TASK, record.client_id, ["title"], {"title": "Buy oat milk"})
        clock.advance(100)
        db.apply_local_mutation(TASK, record.client_id, ["status"], {"status": "Doing"})

        entries = db.list_queue_entries()
        assert len(entries) == 1
        assert entries[0].operation == SyncOperation.CREATE.value
        assert entries[0].get_changed_fields() == ["status", "title"]
        assert entries[0].get_payload() == {"title": "Buy oat milk", "status": "Doing"}

    def test_edits_coalesce_into_one_update(self, db, clock):
        """Test repeated edits of a pushed record leave one update entry."""
        client_id = pulled_task(db)
        clock.advance(100)
        db.apply_local_mutation(TASK, client_id, ["title"], {"title": "First"})
        first = db.get_entry_for(TASK, client_id)
        clock.advance(100)
        db.apply_local_mutation(TASK, client_id, ["status"], {"status": "Doing"})
        second = db.get_entry_for(TASK, client_id)

        assert db.count_queue_entries() == 1
        assert second.id == first.id
        assert second.operation == SyncOperation.UPDATE.value
        assert second.notion_id == "page-1"
        assert second.get_changed_fields() == ["status", "title"]
        assert second.pending_since == first.pending_since
        assert second.updated_at > first.updated_at

    def test_mutation_sets_pending(self, db):
        """Test a local edit marks the record pending."""
        client_id = pulled_task(db)
        record = db.apply_local_mutation(TASK, client_id, ["title"], {"title": "Edited"})

        assert record.sync_status == SyncStatus.PENDING.value
        assert record.get_payload()["title"] == "Edited"

    def test_local_stamp_newer_than_remote(self, db, clock):
        """Test a local stamp is never older than the field's remote stamp."""
        client_id = db.upsert_from_remote(
            TASK, "page-1", {"title": "From the future"}, clock.now + 50_000
        ).record.client_id
        record = db.apply_local_mutation(TASK, client_id, ["title"], {"title": "Edited"})

        assert record.get_field_local_ts()["title"] == clock.now + 50_001

    def test_removed_field(self, db):
        """Test a changed field missing from the new payload is removed."""
        client_id = pulled_task(db)
        record = db.apply_local_mutation(TASK, client_id, ["status"], {})

        assert "status" not in record.get_payload()
        assert db.get_entry_for(TASK, client_id).get_changed_fields() == ["status"]

    def test_mutation_of_missing_record(self, db):
        """Test editing an unknown record returns None."""
        assert db.apply_local_mutation(TASK, "missing", ["title"], {"title": "x"}) is None
        assert db.count_queue_entries() == 0


class TestUpsertFromRemote:
    """Tests for merging pulled records."""

    def test_insert_new_record(self, db):
        """Test an unknown Notion page is inserted as synced."""
        result = db.upsert_from_remote(TASK, "page-1", {"title": "Remote"}, 1_000)

        assert result.created
        assert result.record.sync_status == SyncStatus.SYNCED.value
        assert result.record.notion_id == "page-1"
        assert result.record.get_field_notion_ts() == {"title": 1_000}
        assert db.count_queue_entries() == 0

    def test_repeat_is_noop(self, db):
        """Test applying the same remote version twice changes nothing."""
        db.upsert_from_remote(TASK, "page-1", {"title": "Remote"}, 1_000)
        before = db.get_by_notion_id(TASK, "page-1")
        result = db.upsert_from_remote(TASK, "page-1", {"title": "Remote"}, 1_000)

        assert not result.created
        assert result.changed_fields == []
        assert result.record.get_field_notion_ts() == before.get_field_notion_ts()
        assert db.count_records(TASK) == 1

    def test_stamps_only_changed_fields(self, db):
        """Test only fields whose value changed get the new remote stamp."""
        db.upsert_from_remote(TASK, "page-1", {"title": "A", "status": "Todo"}, 1_000)
        result = db.upsert_from_remote(TASK, "page-1", {"title": "B", "status": "Todo"}, 2_000)

        assert result.changed_fields == ["title"]
        assert result.record.get_field_notion_ts() == {"status": 1_000, "title": 2_000}
        assert result.record.last_modified_notion == 2_000

    def test_stale_version_ignored(self, db):
        """Test a remote version older than the stored one is ignored."""
        db.upsert_from_remote(TASK, "page-1", {"title": "New"}, 5_000)
        result = db.upsert_from_remote(TASK, "page-1", {"title": "Old"}, 1_000)

        assert result.changed_fields == []
        assert db.get_by_notion_id(TASK, "page-1").get_payload() == {"title": "New"}

    def test_remote_wins_when_newer(self, db, clock):
        """Test a newer remote edit of the same field overrides the local edit."""
        client_id = pulled_task(db, "Original", ts=1_000)
        clock.now = 5_000
        db.apply_local_mutation(TASK, client_id, ["title"], {"title": "Local"})

        result = db.upsert_from_remote(
            TASK, "page-1", {"title": "Remote", "status": "Todo"}, 9_000
        )

        assert result.overridden_fields == ["title"]
        assert result.record.get_payload()["title"] == "Remote"
        assert result.record.sync_status == SyncStatus.SYNCED.value
        # The update entry has nothing left to push
        assert db.get_entry_for(TASK, client_id) is None

        conflicts = db.list_conflicts(TASK)
        assert len(conflicts) == 1
        assert conflicts[0].field == "title"
        assert conflicts[0].get_local_value() == "Local"
        assert conflicts[0].get_remote_value() == "Remote"
        assert conflicts[0].winner == "remote"

    def test_local_wins_when_newer(self, db, clock):
        """Test a local edit newer than the remote edit survives the pull."""
        client_id = pulled_task(db, "Original", ts=1_000)
        clock.now = 5_000
        db.apply_local_mutation(TASK, client_id, ["title"], {"title": "Local"})

        result = db.upsert_from_remote(
            TASK, "page-1", {"title": "Remote", "status": "Todo"}, 3_000
        )

        assert result.overridden_fields == []
        assert result.record.get_payload()["title"] == "Local"
        assert result.record.sync_status == SyncStatus.PENDING.value
        assert result.record.get_synced_payload()["title"] == "Remote"
        assert db.get_entry_for(TASK, client_id).get_changed_fields() == ["title"]
        assert db.list_conflicts() == []

    def test_tie_goes_to_remote(self, db, clock):
        """Test equal timestamps resolve to the remote value."""
        client_id = pulled_task(db, "Original", ts=1_000)
        clock.now = 5_000
        db.apply_local_mutation(TASK, client_id, ["title"], {"title": "Local"})

        result = db.upsert_from_remote(
            TASK, "page-1", {"title": "Remote", "status": "Todo"}, 5_000
        )

        assert result.record.get_payload()["title"] == "Remote"

    def test_different_fields_merge(self, db, clock):
        """Test a local edit and a remote edit of different fields both survive."""
        client_id = pulled_task(db, "Original", ts=1_000)
        clock.now = 5_000
        db.apply_local_mutation(TASK, client_id, ["title"], {"title": "Local"})

        result = db.upsert_from_remote(
            TASK, "page-1", {"title": "Original", "status": "Done"}, 9_000
        )

        assert result.record.get_payload() == {"title": "Local", "status": "Done"}
        entry = db.get_entry_for(TASK, client_id)
        assert entry.get_changed_fields() == ["title"]
        assert entry.get_payload() == {"title": "Local", "status": "Done"}


class TestQueueLifecycle:
    """Tests for completing and failing pushes."""

    def test_complete_create(self, db, clock):
        """Test a confirmed create assigns the Notion ID and clears the entry."""
        record = db.create_local(TASK, {"title": "Buy milk"})
        entry = db.get_entry_for(TASK, record.client_id)

        updated = db.complete_push(
            entry.id, "page-9", clock.now + 10, entry.get_payload(), entry.updated_at
        )

        assert updated.notion_id == "page-9"
        assert updated.sync_status == SyncStatus.SYNCED.value
        assert updated.get_synced_payload() == {"title": "Buy milk"}
        assert updated.get_field_notion_ts()["title"] == clock.now + 10
        assert db.count_queue_entries() == 0

    def test_complete_keeps_edit_made_during_push(self, db, clock):
        """Test an edit coalesced while the push was in flight stays queued."""
        record = db.create_local(TASK, {"title": "Buy milk"})
        entry = db.get_entry_for(TASK, record.client_id)
        pushed = entry.get_payload()

        clock.advance(10)
        db.apply_local_mutation(TASK, record.client_id, ["title"], {"title": "Buy bread"})
        updated = db.complete_push(entry.id, "page-9", clock.now, pushed, entry.updated_at)

        assert updated.notion_id == "page-9"
        assert updated.sync_status == SyncStatus.PENDING.value
        remaining = db.get_entry_for(TASK, record.client_id)
        assert remaining.operation == SyncOperation.UPDATE.value
        assert remaining.notion_id == "page-9"
        assert remaining.get_changed_fields() == ["title"]
        assert remaining.get_payload() == {"title": "Buy bread"}

    def test_retryable_failure(self, db, clock):
        """Test a transient failure counts a retry and defers the entry."""
        record = db.create_local(TASK, {"title": "Buy milk"})
        entry = db.get_entry_for(TASK, record.client_id)

        failed = db.record_retryable_failure(entry.id, "503", clock.now + 5_000, max_retries=3)

        assert failed.retry_count == 1
        assert failed.status == QueueEntryStatus.PENDING.value
        assert failed.last_error == "503"
        assert db.list_eligible_entries(TASK) == []
        assert len(db.list_eligible_entries(TASK, now=clock.now + 5_000)) == 1

    def test_retries_exhausted(self, db, clock):
        """Test the entry leaves the rotation once retries run out."""
        record = db.create_local(TASK, {"title": "Buy milk"})
        entry = db.get_entry_for(TASK, record.client_id)

        db.record_retryable_failure(entry.id, "503", clock.now, max_retries=2)
        failed = db.record_retryable_failure(entry.id, "503", clock.now, max_retries=2)

        assert failed.status == QueueEntryStatus.ERROR.value
        assert db.get_by_id(TASK, record.client_id).sync_status == SyncStatus.ERROR.value
        assert db.list_eligible_entries(TASK, now=clock.now + 1_000_000) == []

    def test_terminal_failure(self, db):
        """Test a rejected push parks the entry and flags the record."""
        record = db.create_local(TASK, {"title": "Buy milk"})
        entry = db.get_entry_for(TASK, record.client_id)

        db.record_terminal_failure(entry.id, "validation_error")

        assert db.get_queue_entry(entry.id).status == QueueEntryStatus.ERROR.value
        stored = db.get_by_id(TASK, record.client_id)
        assert stored.sync_status == SyncStatus.ERROR.value
        assert stored.last_error == "validation_error"

    def test_retry_entry(self, db, clock):
        """Test manual retry puts a failed entry back into rotation."""
        record = db.create_local(TASK, {"title": "Buy milk"})
        entry = db.get_entry_for(TASK, record.client_id)
        db.record_terminal_failure(entry.id, "boom")

        assert db.retry_entry(entry.id)

        retried = db.get_queue_entry(entry.id)
        assert retried.status == QueueEntryStatus.PENDING.value
        assert retried.retry_count == 0
        assert retried.next_attempt_at is None
        assert db.get_by_id(TASK, record.client_id).sync_status == SyncStatus.LOCAL.value
        assert not db.retry_entry(9999)

    def test_retry_failed_entries(self, db):
        """Test retrying every failed entry of a type."""
        for title in ("One", "Two"):
            record = db.create_local(TASK, {"title": title})
            db.record_terminal_failure(db.get_entry_for(TASK, record.client_id).id, "boom")

        assert db.retry_failed_entries(TASK) == 2
        assert db.count_queue_entries(status=QueueEntryStatus.ERROR) == 0

    def test_eligible_entries_fifo(self, db, clock):
        """Test eligible entries come back oldest first."""
        first = db.create_local(TASK, {"title": "First"})
        clock.advance(10)
        second = db.create_local(TASK, {"title": "Second"})
        clock.advance(10)
        db.apply_local_mutation(TASK, first.client_id, ["title"], {"title": "First!"})

        entries = db.list_eligible_entries(TASK)

        assert [e.client_id for e in entries] == [first.client_id, second.client_id]

    def test_mark_remote_missing(self, db):
        """Test a push to a deleted page trashes the record."""
        client_id = pulled_task(db)
        db.apply_local_mutation(TASK, client_id, ["title"], {"title": "Edited"})
        entry = db.get_entry_for(TASK, client_id)

        assert db.mark_remote_missing(entry.id)

        assert db.get_by_id(TASK, client_id).sync_status == SyncStatus.TRASHED.value
        assert db.count_queue_entries() == 0

    def test_restore_from_trash(self, db):
        """Test restoring a trashed record queues a fresh create."""
        client_id = pulled_task(db)
        db.apply_local_mutation(TASK, client_id, ["title"], {"title": "Edited"})
        db.mark_remote_missing(db.get_entry_for(TASK, client_id).id)

        restored = db.restore_from_trash(TASK, client_id)

        assert restored.notion_id is None
        assert restored.sync_status == SyncStatus.LOCAL.value
        entry = db.get_entry_for(TASK, client_id)
        assert entry.operation == SyncOperation.CREATE.value
        assert entry.get_payload()["title"] == "Edited"

    def test_clear_queue(self, db):
        """Test discarding queued mutations."""
        db.create_local(TASK, {"title": "One"})
        db.create_local(EntityType.PROJECT, {"title": "Two"})

        assert db.clear_queue(TASK) == 1
        assert db.count_queue_entries() == 1


class TestDelete:
    """Tests for deleting records."""

    def test_delete_pushed_record(self, db):
        """Test deleting a pushed record queues an archive of the page."""
        client_id = pulled_task(db)
        db.apply_local_mutation(TASK, client_id, ["title"], {"title": "Edited"})

        assert db.delete(TASK, client_id)

        assert db.get_by_id(TASK, client_id) is None
        entries = db.list_queue_entries()
        assert len(entries) == 1
        assert entries[0].operation == SyncOperation.DELETE.value
        assert entries[0].notion_id == "page-1"

    def test_pull_skips_page_awaiting_archive(self, db):
        """Test a pulled page is not re-created while its delete is queued."""
        client_id = pulled_task(db)
        db.delete(TASK, client_id)

        result = db.upsert_from_remote(TASK, "page-1", {"title": "Write report"}, 2_000)

        assert result.skipped
        assert result.record is None
        assert db.count_records(TASK) == 0
        assert db.get_by_notion_id(TASK, "page-1") is None

    def test_delete_local_only_record(self, db):
        """Test deleting a never-pushed record leaves nothing queued."""
        record = db.create_local(TASK, {"title": "Oops"})

        assert db.delete(TASK, record.client_id)
        assert db.count_queue_entries() == 0

    def test_delete_missing(self, db):
        """Test deleting an unknown record returns False."""
        assert not db.delete(TASK, "missing")


class TestSyncState:
    """Tests for sync state bookkeeping."""

    def test_set_and_get(self, db):
        """Test storing and replacing values."""
        db.set_sync_state("task:cursor", "abc")
        db.set_sync_state("task:cursor", "def")

        assert db.get_sync_state("task:cursor") == "def"
        assert db.get_sync_state("task:last_sync") is None

    def test_clear(self, db):
        """Test removing a single key."""
        db.set_sync_state("task:cursor", "abc")
        db.clear_sync_state("task:cursor")

        assert db.get_sync_state("task:cursor") is None

    def test_clear_prefix(self, db):
        """Test removing every key of an entity type."""
        db.set_sync_state("task:cursor", "abc")
        db.set_sync_state("task:last_sync", "2025-01-01T00:00:00.000Z")
        db.set_sync_state("project:cursor", "xyz")

        assert db.clear_sync_state_prefix("task:") == 2
        assert db.list_sync_state() == {"project:cursor": "xyz"}


@pytest.mark.parametrize("entity_type", list(EntityType))
def test_every_entity_type_round_trips(db, entity_type):
    """Test each entity type can be created and read back."""
    record = db.create_local(entity_type, {"title": "Hello"})

    assert db.get_by_id(entity_type, record.client_id).get_payload() == {"title": "Hello"}
