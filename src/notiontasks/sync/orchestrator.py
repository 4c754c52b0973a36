"""Sync cycle orchestration.

A cycle for one entity type is a pull phase (page through the remote
database and merge each record into the local store) followed by a push
phase (drain the sync queue). Cycles are started through the job
coordinator so only one sync or import runs at a time.

An import pulls the whole database in ``last_edited_time`` windows, newest
first. Each window is a separate query with its own cursor, which keeps
pagination shallow on large databases.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional

from ..config import Config, get_config
from ..db.schemas import EntityType, state_key
from ..db.sqlite import Database, get_db
from ..utils import iso_to_ms, ms_to_iso
from .coordinator import CancellationToken, JobCancelledError, JobCoordinator, JobStatus
from .notion import (
    NotionAuthError,
    NotionConfigError,
    NotionError,
    NotionGateway,
    NotionNotFoundError,
    NotionRetryExhaustedError,
    NotionValidationError,
    RemotePage,
    describe_error,
)
from .queue import DrainResult, SyncQueueProcessor

logger = logging.getLogger(__name__)

# Notion rounds last_edited_time to the minute
LAST_EDITED_SLACK_MS = 60_000

DAY_MS = 86_400_000

# Window boundaries in days before the import started
IMPORT_WINDOW_DAYS = (1, 3, 7, 14, 30, 60, 90, 180, 365)

# Sync state key names (prefixed with the entity type)
KEY_LAST_SYNC = "last_sync"
KEY_CURSOR = "cursor"
KEY_CURSOR_SINCE = "cursor_since"
KEY_PULL_STARTED = "pull_started"
KEY_INITIAL_IMPORT = "initial_import_done"
KEY_COMPLETED_FILTER = "completed_filter"
KEY_PROPERTY_TYPES = "property_types"
KEY_IMPORT_STARTED = "import_started"
KEY_IMPORT_WINDOW = "import_window"
KEY_IMPORT_CURSOR = "import_cursor"

PULL_KEYS = (
    KEY_LAST_SYNC,
    KEY_CURSOR,
    KEY_CURSOR_SINCE,
    KEY_PULL_STARTED,
    KEY_INITIAL_IMPORT,
    KEY_COMPLETED_FILTER,
    KEY_IMPORT_STARTED,
    KEY_IMPORT_WINDOW,
    KEY_IMPORT_CURSOR,
)


def import_windows(anchor_ms: int) -> list[tuple[Optional[str], Optional[str]]]:
    """
    ``(since, until)`` bounds of each import window, newest first.

    The first window has no upper bound and the last no lower bound, so
    together they cover every possible edit time.

    Example:
        >>> windows = import_windows(400 * 86_400_000)
        >>> len(windows), windows[0][1], windows[-1][0]
        (10, None, None)
    """
    bounds: list[Optional[str]] = [None]
    bounds += [ms_to_iso(anchor_ms - days * DAY_MS) for days in IMPORT_WINDOW_DAYS]
    bounds.append(None)
    return [(bounds[i + 1], bounds[i]) for i in range(len(bounds) - 1)]


def is_gateway_timeout(error: NotionError) -> bool:
    """True if the request (or its last retry) ended in a 504."""
    if isinstance(error, NotionRetryExhaustedError) and error.last_error is not None:
        error = error.last_error
    return error.status == 504


@dataclass
class CycleResult:
    """Result of one pull + push cycle for an entity type."""

    entity_type: EntityType
    pulled: int = 0
    created: int = 0
    updated: int = 0
    conflicts: int = 0
    pages: int = 0
    windows_skipped: int = 0
    pull_complete: bool = False
    pull_errors: list[tuple[str, str]] = field(default_factory=list)
    push: Optional[DrainResult] = None
    cancelled: bool = False

    @property
    def errors(self) -> list[tuple[str, str]]:
        return self.pull_errors + (self.push.errors if self.push else [])

    @property
    def success(self) -> bool:
        return not self.errors and not self.cancelled

    def summary(self) -> str:
        parts = [f"{self.entity_type.value}: pulled {self.pulled}"]
        if self.push is not None:
            parts.append(f"pushed {self.push.pushed}")
        if self.conflicts:
            parts.append(f"{self.conflicts} conflicts")
        if self.windows_skipped:
            parts.append(f"{self.windows_skipped} import windows timed out")
        if self.errors:
            parts.append(f"{len(self.errors)} errors")
        if self.cancelled:
            parts.append("cancelled")
        return ", ".join(parts)


class SyncOrchestrator:
    """Runs pull/push cycles and exposes them as coordinated jobs."""

    def __init__(
        self,
        db: Optional[Database] = None,
        gateway: Optional[NotionGateway] = None,
        processor: Optional[SyncQueueProcessor] = None,
        coordinator: Optional[JobCoordinator] = None,
        config: Optional[Config] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize orchestrator.

        Args:
            db: Database instance (uses global if not provided)
            gateway: Notion gateway (creates new if not provided)
            processor: Queue processor (built from db and gateway if not provided)
            coordinator: Job coordinator shared with other callers
            config: Configuration (uses global config if not provided)
            sleep: Sleep used between pages when no cancellation token is given
        """
        self.config = config or get_config()
        self.db = db or get_db()
        self.gateway = gateway or NotionGateway(self.config)
        self.processor = processor or SyncQueueProcessor(self.db, self.gateway, self.config)
        self.coordinator = coordinator or JobCoordinator(
            self.config.grace_period, error_formatter=describe_error
        )
        self._sleep = sleep

    # ========================================================================
    # Cycle
    # ========================================================================

    def run_cycle(
        self,
        entity_type: EntityType,
        cancel_token: Optional[CancellationToken] = None,
        pull: bool = True,
        push: bool = True,
        full: bool = False,
        show_progress: bool = False,
        job_type: Optional[str] = None,
    ) -> CycleResult:
        """Run one sync cycle: pull everything, then push the queue.

        Args:
            entity_type: Entity type to sync
            cancel_token: Cooperative cancellation signal
            pull: Run the pull phase
            push: Run the push phase
            full: Import every record window by window, ignoring the last sync time
            show_progress: Show a progress bar while pushing
            job_type: Coordinator job to report progress on

        Returns:
            CycleResult with statistics

        Raises:
            NotionAuthError, NotionConfigError: Abort the cycle
        """
        entity_type = EntityType(entity_type)
        result = CycleResult(entity_type=entity_type)

        try:
            if pull:
                try:
                    if full:
                        self._import(entity_type, result, cancel_token, job_type)
                    else:
                        self._pull(entity_type, result, cancel_token, job_type)
                except (NotionAuthError, NotionConfigError):
                    raise
                except NotionError as e:
                    # Cursor is kept, the next cycle resumes from it
                    logger.warning("Pull of %s failed: %s", entity_type.value, e)
                    result.pull_errors.append(("pull", describe_error(e)))

            if push:
                if cancel_token:
                    cancel_token.raise_if_cancelled()
                result.push = self.processor.drain(entity_type, cancel_token, show_progress)
                result.cancelled = result.push.cancelled
        except JobCancelledError:
            result.cancelled = True

        logger.info("Cycle finished: %s", result.summary())
        return result

    def _pull(
        self,
        entity_type: EntityType,
        result: CycleResult,
        cancel_token: Optional[CancellationToken],
        job_type: Optional[str],
    ) -> None:
        """Page through records changed since the last sync and merge them."""
        settings = self.gateway.settings_for(entity_type)
        self._check_completed_filter(entity_type, settings.completed_status)

        cursor = self._get(entity_type, KEY_CURSOR)
        if cursor:
            since = self._get(entity_type, KEY_CURSOR_SINCE)
            logger.info("Resuming %s pull from saved cursor", entity_type.value)
        else:
            since = self._get(entity_type, KEY_LAST_SYNC)
            started = self.db.clock() - LAST_EDITED_SLACK_MS
            self._set(entity_type, KEY_PULL_STARTED, ms_to_iso(started))

        def save_cursor(next_cursor: str) -> None:
            self._set(entity_type, KEY_CURSOR, next_cursor)
            self._set(entity_type, KEY_CURSOR_SINCE, since)

        self._page_from_cursor(
            entity_type, result, cancel_token, job_type,
            cursor, since, None, save_cursor, (KEY_CURSOR, KEY_CURSOR_SINCE),
        )

        # Finished: the next pull only asks for what changed since this one began
        self._complete_pull(entity_type, result, KEY_PULL_STARTED, (KEY_CURSOR, KEY_CURSOR_SINCE))

    def _import(
        self,
        entity_type: EntityType,
        result: CycleResult,
        cancel_token: Optional[CancellationToken],
        job_type: Optional[str],
    ) -> None:
        """Pull every record, one last-edited window at a time.

        The window index and cursor are saved after every page so an
        interrupted import resumes where it stopped. A window that times out
        with a 504 is skipped and the import moves on to the next one.
        """
        settings = self.gateway.settings_for(entity_type)
        self._check_completed_filter(entity_type, settings.completed_status)

        started = self._get(entity_type, KEY_IMPORT_STARTED)
        if started is None:
            started = ms_to_iso(self.db.clock() - LAST_EDITED_SLACK_MS)
            self._set(entity_type, KEY_IMPORT_STARTED, started)
            self._clear(entity_type, KEY_IMPORT_WINDOW, KEY_IMPORT_CURSOR)

        windows = import_windows(iso_to_ms(started))
        index = int(self._get(entity_type, KEY_IMPORT_WINDOW) or 0)
        cursor = self._get(entity_type, KEY_IMPORT_CURSOR)
        if index or cursor:
            logger.info(
                "Resuming %s import at window %d/%d", entity_type.value, index + 1, len(windows)
            )

        def save_cursor(next_cursor: str) -> None:
            self._set(entity_type, KEY_IMPORT_CURSOR, next_cursor)

        while index < len(windows):
            since, until = windows[index]
            try:
                self._page_from_cursor(
                    entity_type, result, cancel_token, job_type,
                    cursor, since, until, save_cursor, (KEY_IMPORT_CURSOR,),
                )
            except NotionError as e:
                if not is_gateway_timeout(e):
                    raise
                logger.warning(
                    "Import window %d/%d of %s timed out; moving to the next one",
                    index + 1,
                    len(windows),
                    entity_type.value,
                )
                result.windows_skipped += 1

            index += 1
            cursor = None
            self._set(entity_type, KEY_IMPORT_WINDOW, str(index))
            self._clear(entity_type, KEY_IMPORT_CURSOR)

        self._complete_pull(
            entity_type,
            result,
            KEY_IMPORT_STARTED,
            (KEY_IMPORT_WINDOW, KEY_IMPORT_CURSOR, KEY_CURSOR, KEY_CURSOR_SINCE, KEY_PULL_STARTED),
        )

    def _page_from_cursor(
        self,
        entity_type: EntityType,
        result: CycleResult,
        cancel_token: Optional[CancellationToken],
        job_type: Optional[str],
        cursor: Optional[str],
        since: Optional[str],
        until: Optional[str],
        save_cursor: Callable[[str], None],
        cursor_keys: tuple[str, ...],
    ) -> None:
        """Page through a query, starting over if a saved cursor is rejected.

        Notion answers an expired or unknown ``start_cursor`` with a 400, so a
        rejected first request of a resumed query drops the cursor and runs
        the same query from the beginning.
        """
        pages = result.pages
        try:
            self._page_through(
                entity_type, result, cancel_token, job_type, cursor, since, until, save_cursor
            )
        except NotionValidationError as e:
            if not cursor or result.pages != pages or isinstance(e, NotionNotFoundError):
                raise
            logger.warning(
                "Saved cursor for %s was rejected (%s); starting the query over",
                entity_type.value,
                e,
            )
            self._clear(entity_type, *cursor_keys)
            self._page_through(
                entity_type, result, cancel_token, job_type, None, since, until, save_cursor
            )

    def _page_through(
        self,
        entity_type: EntityType,
        result: CycleResult,
        cancel_token: Optional[CancellationToken],
        job_type: Optional[str],
        cursor: Optional[str],
        since: Optional[str],
        until: Optional[str],
        save_cursor: Callable[[str], None],
    ) -> None:
        """Fetch and merge pages until the query has no more results."""
        while True:
            if cancel_token:
                cancel_token.raise_if_cancelled()

            page = self.gateway.fetch_page(
                entity_type,
                cursor=cursor,
                since=since,
                include_completed=self.config.include_completed,
                cancel_token=cancel_token,
                until=until,
            )
            self._apply_page(entity_type, page, result)
            result.pages += 1

            if job_type:
                self.coordinator.report_progress(
                    job_type,
                    message=f"Pulled {result.pulled} {entity_type.value} records",
                )

            if not page.has_more or not page.next_cursor:
                return

            cursor = page.next_cursor
            save_cursor(cursor)

            delay = self._page_delay(result.pages)
            if cancel_token:
                cancel_token.sleep(delay)
            else:
                self._sleep(delay)

    def _complete_pull(
        self,
        entity_type: EntityType,
        result: CycleResult,
        started_key: str,
        progress_keys: tuple[str, ...],
    ) -> None:
        started = self._get(entity_type, started_key)
        if started:
            self._set(entity_type, KEY_LAST_SYNC, started)
        self._clear(entity_type, started_key, *progress_keys)
        self._set(entity_type, KEY_INITIAL_IMPORT, "true")
        result.pull_complete = True

    def _apply_page(self, entity_type: EntityType, page: RemotePage, result: CycleResult) -> None:
        """Merge one page of remote records into the local store."""
        types = {}
        for record in page.records:
            if record.archived:
                continue
            try:
                upsert = self.db.upsert_from_remote(
                    entity_type, record.notion_id, record.payload, record.last_edited
                )
            except Exception as e:
                logger.warning("Could not apply %s %s: %s", entity_type.value, record.notion_id, e)
                result.pull_errors.append((record.notion_id, str(e)))
                continue

            if upsert.skipped:
                continue
            result.pulled += 1
            if upsert.created:
                result.created += 1
            elif upsert.changed_fields:
                result.updated += 1
            if upsert.overridden_fields:
                result.conflicts += 1
            types.update(record.property_types)

        if types:
            self._merge_property_types(entity_type, types)

    def _page_delay(self, pages_fetched: int) -> float:
        """Pause between pages; grows slowly during long imports."""
        return self.config.page_delay + 0.25 * (pages_fetched // 50)

    def _check_completed_filter(
        self, entity_type: EntityType, completed_status: Optional[str]
    ) -> None:
        """Reset pull progress if the completed-records filter changed."""
        if self.config.include_completed or not completed_status:
            current = "include"
        else:
            current = f"exclude:{completed_status}"

        previous = self._get(entity_type, KEY_COMPLETED_FILTER)
        if previous is not None and previous != current:
            logger.info(
                "Completed filter for %s changed (%s -> %s); pulling everything again",
                entity_type.value,
                previous,
                current,
            )
            self._clear(
                entity_type,
                KEY_LAST_SYNC,
                KEY_CURSOR,
                KEY_CURSOR_SINCE,
                KEY_PULL_STARTED,
                KEY_IMPORT_STARTED,
                KEY_IMPORT_WINDOW,
                KEY_IMPORT_CURSOR,
            )
        self._set(entity_type, KEY_COMPLETED_FILTER, current)

    def _merge_property_types(self, entity_type: EntityType, types: dict[str, str]) -> None:
        raw = self._get(entity_type, KEY_PROPERTY_TYPES)
        known = json.loads(raw) if raw else {}
        if all(known.get(k) == v for k, v in types.items()):
            return
        known.update(types)
        self._set(entity_type, KEY_PROPERTY_TYPES, json.dumps(known, sort_keys=True))

    def _get(self, entity_type: EntityType, key: str) -> Optional[str]:
        return self.db.get_sync_state(state_key(entity_type, key))

    def _set(self, entity_type: EntityType, key: str, value: Optional[str]) -> None:
        self.db.set_sync_state(state_key(entity_type, key), value)

    def _clear(self, entity_type: EntityType, *keys: str) -> None:
        for key in keys:
            self.db.clear_sync_state(state_key(entity_type, key))

    # ========================================================================
    # Coordinated Jobs
    # ========================================================================

    def request_sync(
        self,
        entity_type: EntityType,
        pull: bool = True,
        push: bool = True,
        show_progress: bool = False,
    ) -> JobStatus:
        """Sync one entity type as a coordinated job."""
        entity_type = EntityType(entity_type)
        job_type = f"sync:{entity_type.value}"

        def work(token: CancellationToken) -> str:
            result = self.run_cycle(
                entity_type, token, pull=pull, push=push,
                show_progress=show_progress, job_type=job_type,
            )
            return result.summary()

        return self.coordinator.request(job_type, work)

    def request_sync_all(
        self, pull: bool = True, push: bool = True, show_progress: bool = False
    ) -> JobStatus:
        """Sync every configured entity type as one coordinated job.

        A failing entity type does not stop the others; an authentication
        failure stops the whole job.
        """
        job_type = "sync:all"
        entity_types = [s.entity_type for s in self.config.configured_entities()]

        def work(token: CancellationToken) -> str:
            summaries = []
            for index, entity_type in enumerate(entity_types):
                token.raise_if_cancelled()
                result = self.run_cycle(
                    entity_type, token, pull=pull, push=push,
                    show_progress=show_progress, job_type=job_type,
                )
                summaries.append(result.summary())
                self.coordinator.report_progress(
                    job_type, progress=round(100 * (index + 1) / len(entity_types))
                )
                if result.cancelled:
                    break
            return "; ".join(summaries) or "Nothing configured to sync"

        return self.coordinator.request(job_type, work)

    def request_import(self, entity_type: EntityType, show_progress: bool = False) -> JobStatus:
        """Import every record of an entity type window by window, then push."""
        entity_type = EntityType(entity_type)
        job_type = f"import:{entity_type.value}"

        def work(token: CancellationToken) -> str:
            result = self.run_cycle(
                entity_type, token, full=True, show_progress=show_progress, job_type=job_type
            )
            return result.summary()

        return self.coordinator.request(job_type, work)

    def reset_import(self, entity_type: EntityType) -> None:
        """Forget pull progress so the next sync imports everything again.

        Local records and queued changes are kept.
        """
        for key in PULL_KEYS:
            self.db.clear_sync_state(state_key(entity_type, key))
        logger.info("Reset import state for %s", EntityType(entity_type).value)
