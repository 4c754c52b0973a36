"""Notion API gateway for entity database operations.

Handles all Notion API interactions with proper error handling,
rate limiting, retry with backoff, and data mapping between local
payloads and Notion properties.
"""

import logging
import random
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import httpx
from notion_client import Client
from notion_client.errors import HTTPResponseError, RequestTimeoutError

from ..config import ENTITY_ENV_PREFIX, Config, EntitySettings, get_config
from ..db.schemas import EntityType, SyncOperation
from ..utils import iso_to_ms
from .backoff import backoff_delay
from .coordinator import CancellationToken, JobCancelledError
from .mapping import RemoteRecord, page_to_record, payload_to_properties

logger = logging.getLogger(__name__)


class NotionError(Exception):
    """Base exception for Notion API errors."""

    retryable = False

    def __init__(self, message: str, status: Optional[int] = None):
        self.status = status
        super().__init__(message)


class NotionConfigError(NotionError):
    """Raised when Notion is not properly configured."""

    pass


class NotionAuthError(NotionError):
    """Raised on 401/403: the API key is invalid or lacks access."""

    pass


class NotionRateLimitError(NotionError):
    """Raised when rate limited by Notion API."""

    retryable = True

    def __init__(self, retry_after: Optional[float] = None):
        self.retry_after = retry_after
        if retry_after is not None:
            message = f"Rate limited. Retry after {retry_after}s"
        else:
            message = "Rate limited"
        super().__init__(message, status=429)


class NotionTransientError(NotionError):
    """Raised on 5xx responses, timeouts and connection failures."""

    retryable = True


class NotionValidationError(NotionError):
    """Raised on non-retryable 4xx responses (bad request, conflict, ...)."""

    pass


class NotionNotFoundError(NotionValidationError):
    """Raised on 404: the page or database does not exist (or was deleted)."""

    pass


class NotionRetryExhaustedError(NotionError):
    """Raised when a retryable failure persists past the attempt limit."""

    retryable = True

    def __init__(self, attempts: int, last_error: Optional[NotionError] = None):
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error else ""
        super().__init__(f"Gave up after {attempts} attempts{detail}")


def _retry_after(headers: Any) -> Optional[float]:
    if not headers:
        return None
    value = headers.get("Retry-After") or headers.get("retry-after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def classify_error(exc: BaseException) -> BaseException:
    """Map a notion-client/httpx exception onto the NotionError taxonomy.

    Exceptions that are not API or transport failures are returned unchanged.
    """
    if isinstance(exc, NotionError):
        return exc
    if isinstance(exc, (RequestTimeoutError, httpx.TimeoutException)):
        return NotionTransientError(f"Request timed out: {exc}")
    if isinstance(exc, httpx.TransportError):
        return NotionTransientError(f"Network error: {exc}")
    if isinstance(exc, HTTPResponseError):
        status = getattr(exc, "status", None)
        code = getattr(exc, "code", None)
        # Message is stored in args[0], not as .message attribute
        detail = str(exc.args[0]) if exc.args else "Unknown error"
        message = f"Notion API error: {code or status} - {detail}"
        if status == 429:
            return NotionRateLimitError(_retry_after(getattr(exc, "headers", None)))
        if status in (401, 403):
            return NotionAuthError(message, status=status)
        if status == 404:
            return NotionNotFoundError(message, status=status)
        if status is not None and status >= 500:
            return NotionTransientError(message, status=status)
        return NotionValidationError(message, status=status)
    return exc


def describe_error(exc: BaseException) -> str:
    """User-facing message for a sync failure."""
    if isinstance(exc, NotionRetryExhaustedError) and exc.last_error is not None:
        return f"{describe_error(exc.last_error)} (gave up after {exc.attempts} attempts)"
    if isinstance(exc, JobCancelledError):
        return "Cancelled."
    if isinstance(exc, NotionConfigError):
        return f"Notion is not configured: {exc}"
    if isinstance(exc, NotionAuthError):
        return "Authentication failed. Please check your Notion API key."
    if isinstance(exc, NotionRateLimitError):
        return "Rate limited by Notion. Will retry shortly."
    if isinstance(exc, NotionTransientError):
        return "Network connection issue. Will retry automatically."
    if isinstance(exc, NotionNotFoundError):
        return "Not found in Notion. Please verify the database ID and sharing settings."
    if isinstance(exc, NotionValidationError):
        return f"Notion rejected the request: {exc}"
    return str(exc) or "An unknown error occurred."


class RateLimiter:
    """Minimum-interval gate between outgoing requests (thread-safe)."""

    def __init__(
        self,
        min_interval: float = 0.35,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.min_interval = min_interval
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._last_request_time: Optional[float] = None

    def wait(self) -> None:
        """Block until the next request may be sent."""
        with self._lock:
            if self._last_request_time is not None:
                elapsed = self._clock() - self._last_request_time
                if elapsed < self.min_interval:
                    self._sleep(self.min_interval - elapsed)
            self._last_request_time = self._clock()


# Process-wide limiter shared by every gateway
_shared_limiter: Optional[RateLimiter] = None
_shared_lock = threading.Lock()


def get_rate_limiter(min_interval: float = 0.35) -> RateLimiter:
    """Get or create the shared rate limiter."""
    global _shared_limiter
    with _shared_lock:
        if _shared_limiter is None:
            _shared_limiter = RateLimiter(min_interval)
        return _shared_limiter


@dataclass
class RemotePage:
    """One page of query results."""

    records: list[RemoteRecord] = field(default_factory=list)
    next_cursor: Optional[str] = None
    has_more: bool = False


@dataclass
class PushResult:
    """Outcome of a confirmed remote write."""

    notion_id: Optional[str]
    remote_timestamp: Optional[int] = None  # ms


class NotionGateway:
    """Rate-limited, retrying access to the configured Notion databases."""

    def __init__(
        self,
        config: Optional[Config] = None,
        client: Optional[Client] = None,
        rate_limiter: Optional[RateLimiter] = None,
        sleep: Callable[[float], None] = time.sleep,
        rng: Optional[Callable[[], float]] = None,
    ):
        """Initialize Notion gateway.

        Args:
            config: Configuration (uses global config if not provided)
            client: Notion client to use for every entity (built per API key if not provided)
            rate_limiter: Request gate (process-wide shared limiter if not provided)
            sleep: Sleep function for backoff when no cancellation token is given
            rng: Random source for jitter
        """
        self.config = config or get_config()
        self._client = client
        self._clients: dict[str, Client] = {}
        self.rate_limiter = rate_limiter or get_rate_limiter(self.config.min_request_interval)
        self._sleep = sleep
        self._rng = rng or random.random

    # ========================================================================
    # Setup Helpers
    # ========================================================================

    def settings_for(self, entity_type: EntityType) -> EntitySettings:
        """Get settings for an entity type or raise NotionConfigError."""
        settings = self.config.get_entity_settings(entity_type)
        if not settings:
            prefix = f"NOTION_{ENTITY_ENV_PREFIX[EntityType(entity_type)]}"
            raise NotionConfigError(
                f"No Notion database configured for {EntityType(entity_type).value} "
                f"(set {prefix}_DATABASE_ID or the matching DATA_SOURCE_ID)"
            )
        return settings

    def _client_for(self, entity_type: EntityType) -> Client:
        if self._client is not None:
            return self._client
        api_key = self.config.api_key_for(entity_type)
        if not api_key:
            raise NotionConfigError("NOTION_API_KEY not set")
        if api_key not in self._clients:
            self._clients[api_key] = Client(
                auth=api_key, timeout_ms=int(self.config.request_timeout * 1000)
            )
        return self._clients[api_key]

    def _call(
        self,
        description: str,
        operation: Callable[[], Any],
        cancel_token: Optional[CancellationToken] = None,
    ) -> Any:
        """Execute a request with rate limiting and retry.

        Args:
            description: What is being done, for log messages
            operation: Callable performing one HTTP request
            cancel_token: Checked before each attempt and during backoff

        Returns:
            Result of operation

        Raises:
            NotionAuthError, NotionValidationError: Not retried
            NotionRetryExhaustedError: Retryable failures persisted
            JobCancelledError: Cancelled between attempts
        """
        max_attempts = max(1, self.config.retry_max_attempts)
        last_error: Optional[NotionError] = None

        for attempt in range(max_attempts):
            if cancel_token:
                cancel_token.raise_if_cancelled()
            self.rate_limiter.wait()
            try:
                return operation()
            except (HTTPResponseError, RequestTimeoutError, httpx.HTTPError) as e:
                error = classify_error(e)
                if not isinstance(error, NotionError):
                    raise
                if not error.retryable:
                    raise error from e
                last_error = error

            if attempt == max_attempts - 1:
                break

            if isinstance(last_error, NotionRateLimitError) and last_error.retry_after is not None:
                delay = last_error.retry_after
            else:
                delay = backoff_delay(
                    attempt,
                    self.config.retry_base_delay,
                    self.config.retry_max_delay,
                    self.config.retry_jitter,
                    self._rng,
                )
            logger.warning(
                "%s failed (%s); retrying in %.2fs (attempt %d/%d)",
                description,
                last_error,
                delay,
                attempt + 1,
                max_attempts,
            )
            if cancel_token:
                cancel_token.sleep(delay)
            else:
                self._sleep(delay)

        raise NotionRetryExhaustedError(max_attempts, last_error)

    # ========================================================================
    # Query Operations
    # ========================================================================

    def build_query(
        self,
        settings: EntitySettings,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
        include_completed: Optional[bool] = None,
        until: Optional[str] = None,
    ) -> dict[str, Any]:
        """Build the body of a database query."""
        if include_completed is None:
            include_completed = self.config.include_completed

        body: dict[str, Any] = {
            "page_size": self.config.page_size,
            "sorts": [{"timestamp": "last_edited_time", "direction": "ascending"}],
        }
        if cursor:
            body["start_cursor"] = cursor

        filters = []
        if since:
            filters.append(
                {"timestamp": "last_edited_time", "last_edited_time": {"on_or_after": since}}
            )
        if until:
            filters.append(
                {"timestamp": "last_edited_time", "last_edited_time": {"before": until}}
            )
        if not include_completed and settings.status_property and settings.completed_status:
            filters.append(
                {
                    "property": settings.status_property,
                    settings.status_property_type: {"does_not_equal": settings.completed_status},
                }
            )
        if len(filters) == 1:
            body["filter"] = filters[0]
        elif filters:
            body["filter"] = {"and": filters}
        return body

    def fetch_page(
        self,
        entity_type: EntityType,
        cursor: Optional[str] = None,
        since: Optional[str] = None,
        include_completed: Optional[bool] = None,
        cancel_token: Optional[CancellationToken] = None,
        until: Optional[str] = None,
    ) -> RemotePage:
        """Fetch one page of records from an entity's database.

        Args:
            entity_type: Which database to query
            cursor: Opaque cursor from the previous page
            since: Only records edited on or after this ISO timestamp
            include_completed: Include records in the completed status
            cancel_token: Cancellation checkpoint for retries
            until: Only records edited before this ISO timestamp

        Returns:
            RemotePage with decoded records and the next cursor
        """
        settings = self.settings_for(entity_type)
        client = self._client_for(entity_type)
        body = self.build_query(settings, cursor, since, include_completed, until)
        if settings.data_source_id:
            path = f"data_sources/{settings.data_source_id}/query"
        else:
            path = f"databases/{settings.database_id}/query"

        response = self._call(
            f"Query {EntityType(entity_type).value}",
            lambda: client.request(path=path, method="POST", body=body),
            cancel_token,
        )

        records = [
            page_to_record(page, settings)
            for page in response.get("results", [])
            if page.get("object", "page") == "page"
        ]
        has_more = bool(response.get("has_more"))
        return RemotePage(
            records=records,
            next_cursor=response.get("next_cursor") if has_more else None,
            has_more=has_more,
        )

    def fetch_record(
        self,
        entity_type: EntityType,
        notion_id: str,
        cancel_token: Optional[CancellationToken] = None,
    ) -> RemoteRecord:
        """Get a single page by ID."""
        settings = self.settings_for(entity_type)
        client = self._client_for(entity_type)
        response = self._call(
            f"Retrieve page {notion_id}",
            lambda: client.pages.retrieve(page_id=notion_id),
            cancel_token,
        )
        return page_to_record(response, settings)

    # ========================================================================
    # Write Operations
    # ========================================================================

    def push_record(
        self,
        entity_type: EntityType,
        operation: SyncOperation,
        payload: dict[str, Any],
        notion_id: Optional[str] = None,
        known_types: Optional[dict[str, str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PushResult:
        """Write a local mutation to Notion.

        Args:
            entity_type: Which database the record belongs to
            operation: create, update or delete (archive)
            payload: Fields to write
            notion_id: Page ID (required for update and delete)
            known_types: Property types seen on earlier pulls
            cancel_token: Cancellation checkpoint for retries

        Returns:
            PushResult with the page ID and its new last-edited time
        """
        settings = self.settings_for(entity_type)
        client = self._client_for(entity_type)
        operation = SyncOperation(operation)

        if operation != SyncOperation.CREATE and not notion_id:
            raise NotionValidationError(f"Cannot {operation.value} a record without a Notion ID")

        if operation == SyncOperation.DELETE:
            response = self._call(
                f"Archive page {notion_id}",
                lambda: client.pages.update(page_id=notion_id, archived=True),
                cancel_token,
            )
            return _push_result(response, notion_id)

        properties = payload_to_properties(payload, settings, known_types)

        if operation == SyncOperation.CREATE:
            if settings.data_source_id:
                parent = {"data_source_id": settings.data_source_id}
            else:
                parent = {"database_id": settings.database_id}
            response = self._call(
                f"Create {EntityType(entity_type).value}",
                lambda: client.pages.create(parent=parent, properties=properties),
                cancel_token,
            )
            return _push_result(response, None)

        if not properties:
            return PushResult(notion_id=notion_id)  # Nothing to update

        response = self._call(
            f"Update page {notion_id}",
            lambda: client.pages.update(page_id=notion_id, properties=properties),
            cancel_token,
        )
        return _push_result(response, notion_id)

    # ========================================================================
    # Diagnostics
    # ========================================================================

    def test_connection(self, entity_type: EntityType) -> tuple[bool, str, int]:
        """Check that an entity's database is reachable.

        Returns:
            (ok, message, latency in ms)
        """
        started = time.monotonic()
        try:
            settings = self.settings_for(entity_type)
            client = self._client_for(entity_type)
            if settings.data_source_id:
                path = f"data_sources/{settings.data_source_id}"
            else:
                path = f"databases/{settings.database_id}"
            response = self._call(
                f"Retrieve {path}", lambda: client.request(path=path, method="GET")
            )
        except NotionError as e:
            latency = int((time.monotonic() - started) * 1000)
            return False, describe_error(e), latency

        latency = int((time.monotonic() - started) * 1000)
        title = "".join(t.get("plain_text", "") for t in response.get("title") or [])
        return True, f"Connected to {title or response.get('id', path)}", latency


def _push_result(response: Optional[dict[str, Any]], notion_id: Optional[str]) -> PushResult:
    response = response or {}
    return PushResult(
        notion_id=response.get("id", notion_id),
        remote_timestamp=iso_to_ms(response.get("last_edited_time")),
    )
