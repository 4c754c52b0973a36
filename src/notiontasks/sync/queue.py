"""Sync queue processor for pushing pending local mutations to Notion.

Drains the queue in FIFO order with per-entry backoff, and classifies
failures as retryable (counted and rescheduled), terminal (parked for
manual retry) or fatal (authentication, aborts the drain).
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from tqdm import tqdm

from ..config import Config, get_config
from ..db.models import SyncQueueItem
from ..db.schemas import EntityType, QueueEntryStatus, SyncOperation, state_key
from ..db.sqlite import Database, get_db
from .backoff import backoff_delay
from .coordinator import CancellationToken, JobCancelledError
from .notion import (
    NotionAuthError,
    NotionConfigError,
    NotionError,
    NotionGateway,
    NotionNotFoundError,
    describe_error,
)

logger = logging.getLogger(__name__)


@dataclass
class DrainResult:
    """Result of draining the queue for one entity type."""

    pushed: int = 0
    failed: int = 0  # retryable, rescheduled
    terminal: int = 0  # parked as error
    trashed: int = 0  # remote page gone
    skipped: int = 0  # waiting for backoff
    cancelled: bool = False
    errors: list[tuple[str, str]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return self.pushed + self.failed + self.terminal + self.trashed

    @property
    def success(self) -> bool:
        return len(self.errors) == 0 and not self.cancelled


class SyncQueueProcessor:
    """Pushes queued local mutations through the Notion gateway."""

    def __init__(
        self,
        db: Optional[Database] = None,
        gateway: Optional[NotionGateway] = None,
        config: Optional[Config] = None,
        rng: Optional[Callable[[], float]] = None,
    ):
        """Initialize queue processor.

        Args:
            db: Database instance (uses global if not provided)
            gateway: Notion gateway (creates new if not provided)
            config: Configuration (uses global config if not provided)
            rng: Random source for backoff jitter
        """
        self.config = config or get_config()
        self.db = db or get_db()
        self.gateway = gateway or NotionGateway(self.config)
        self._rng = rng

    def drain(
        self,
        entity_type: EntityType,
        cancel_token: Optional[CancellationToken] = None,
        show_progress: bool = False,
    ) -> DrainResult:
        """Push every eligible queue entry of one entity type.

        Entries are processed oldest first; those still inside their backoff
        window are skipped. Cancellation is checked between entries, and
        entries not yet reached are left untouched.

        Args:
            entity_type: Which entity's entries to push
            cancel_token: Cooperative cancellation signal
            show_progress: Show a progress bar

        Returns:
            DrainResult with push statistics

        Raises:
            NotionAuthError: The API key was rejected
            NotionConfigError: The entity's database is not configured
        """
        entity_type = EntityType(entity_type)
        result = DrainResult()
        entries = self.db.list_eligible_entries(entity_type)
        pending = self.db.count_queue_entries(entity_type, QueueEntryStatus.PENDING)
        result.skipped = max(0, pending - len(entries))

        if not entries:
            return result

        iterator = tqdm(
            entries, desc=f"Pushing {entity_type.value}", disable=not show_progress
        )
        for entry in iterator:
            if cancel_token and cancel_token.cancelled:
                result.cancelled = True
                break
            try:
                self._process_entry(entry, result, cancel_token)
            except JobCancelledError:
                result.cancelled = True
                break

        if result.cancelled:
            logger.info("Push of %s cancelled after %d entries", entity_type.value, result.processed)
        return result

    def _process_entry(
        self,
        entry: SyncQueueItem,
        result: DrainResult,
        cancel_token: Optional[CancellationToken],
    ) -> None:
        """Push a single queue entry and record the outcome.

        Args:
            entry: Queue entry to push
            result: DrainResult to update
            cancel_token: Cooperative cancellation signal
        """
        entity_type = EntityType(entry.entity_type)
        operation = SyncOperation(entry.operation)
        notion_id = entry.notion_id

        if operation != SyncOperation.DELETE:
            record = self.db.get_by_id(entity_type, entry.client_id)
            if record is None:
                # Record vanished without a delete entry; nothing to push
                self.db.complete_push(entry.id, None, None, {}, entry.updated_at)
                return
            notion_id = notion_id or record.notion_id
            if notion_id:
                operation = SyncOperation.UPDATE
            else:
                # No Notion page yet, treat as create
                operation = SyncOperation.CREATE

        label = f"{entity_type.value}/{entry.client_id}"
        try:
            if self.config.verify_before_push and operation == SyncOperation.UPDATE:
                refreshed = self._reconcile_with_remote(entity_type, entry, notion_id, cancel_token)
                if refreshed is None:
                    result.skipped += 1
                    return
                entry = refreshed

            payload = self._build_payload(entry, operation)
            push = self.gateway.push_record(
                entity_type,
                operation,
                payload,
                notion_id=notion_id,
                known_types=self._known_types(entity_type),
                cancel_token=cancel_token,
            )
        except (NotionAuthError, NotionConfigError):
            raise
        except NotionNotFoundError as e:
            if operation == SyncOperation.DELETE:
                # Already gone remotely
                self.db.complete_push(entry.id, notion_id, None, {}, entry.updated_at)
                result.pushed += 1
                return
            logger.warning("%s no longer exists in Notion; marking trashed", label)
            self.db.mark_remote_missing(entry.id)
            result.trashed += 1
            result.errors.append((label, describe_error(e)))
        except NotionError as e:
            if e.retryable:
                self._schedule_retry(entry, e, result, label)
            else:
                logger.error("Push of %s rejected: %s", label, e)
                self.db.record_terminal_failure(entry.id, str(e))
                result.terminal += 1
                result.errors.append((label, describe_error(e)))
        else:
            self.db.complete_push(
                entry.id, push.notion_id, push.remote_timestamp, payload, entry.updated_at
            )
            result.pushed += 1

    def _schedule_retry(
        self, entry: SyncQueueItem, error: NotionError, result: DrainResult, label: str
    ) -> None:
        """Count a retryable failure and push the entry's next attempt out."""
        delay = backoff_delay(
            entry.retry_count,
            self.config.queue_base_delay,
            self.config.queue_max_delay,
            self.config.retry_jitter,
            self._rng,
        )
        next_attempt_at = self.db.clock() + int(delay * 1000)
        updated = self.db.record_retryable_failure(
            entry.id, str(error), next_attempt_at, self.config.entry_max_retries
        )
        result.failed += 1
        result.errors.append((label, describe_error(error)))
        if updated is not None and updated.status == QueueEntryStatus.ERROR.value:
            logger.error(
                "Giving up on %s after %d attempts: %s", label, updated.retry_count, error
            )
        else:
            logger.warning("Push of %s failed (%s); retrying in %.1fs", label, error, delay)

    def _reconcile_with_remote(
        self,
        entity_type: EntityType,
        entry: SyncQueueItem,
        notion_id: str,
        cancel_token: Optional[CancellationToken],
    ) -> Optional[SyncQueueItem]:
        """Merge the current remote page before pushing over it.

        Returns the refreshed entry, or None if nothing is left to push.
        """
        remote = self.gateway.fetch_record(entity_type, notion_id, cancel_token)
        self.db.upsert_from_remote(
            entity_type, remote.notion_id, remote.payload, remote.last_edited
        )
        return self.db.get_queue_entry(entry.id)

    def _build_payload(self, entry: SyncQueueItem, operation: SyncOperation) -> dict[str, Any]:
        """Fields to send: everything for a create, changed fields for an update."""
        if operation == SyncOperation.DELETE:
            return {}
        snapshot = entry.get_payload()
        if operation == SyncOperation.CREATE:
            return snapshot
        return {name: snapshot.get(name) for name in entry.get_changed_fields()}

    def _known_types(self, entity_type: EntityType) -> dict[str, str]:
        raw = self.db.get_sync_state(state_key(entity_type, "property_types"))
        return json.loads(raw) if raw else {}
