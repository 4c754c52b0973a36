"""Sync module for Notion API integration.

Handles bidirectional sync between the local SQLite database and Notion:
the rate-limited gateway, field-level conflict resolution, the push queue,
single-flight job coordination and the pull/push cycle.
"""

from .backoff import backoff_delay, base_delay
from .conflict import FieldSource, RemoteChange, Resolution, resolve
from .coordinator import (
    CancellationToken,
    JobCancelledError,
    JobCoordinator,
    JobState,
    JobStatus,
    Subscription,
)
from .mapping import RemoteRecord, page_to_record, payload_to_properties
from .notion import (
    NotionAuthError,
    NotionConfigError,
    NotionError,
    NotionGateway,
    NotionNotFoundError,
    NotionRateLimitError,
    NotionRetryExhaustedError,
    NotionTransientError,
    NotionValidationError,
    PushResult,
    RateLimiter,
    RemotePage,
    classify_error,
    describe_error,
)
from .orchestrator import CycleResult, SyncOrchestrator
from .queue import DrainResult, SyncQueueProcessor

__all__ = [
    # Backoff
    "backoff_delay",
    "base_delay",
    # Conflict resolution
    "FieldSource",
    "RemoteChange",
    "Resolution",
    "resolve",
    # Coordinator
    "CancellationToken",
    "JobCancelledError",
    "JobCoordinator",
    "JobState",
    "JobStatus",
    "Subscription",
    # Mapping
    "RemoteRecord",
    "page_to_record",
    "payload_to_properties",
    # Notion gateway
    "NotionAuthError",
    "NotionConfigError",
    "NotionError",
    "NotionGateway",
    "NotionNotFoundError",
    "NotionRateLimitError",
    "NotionRetryExhaustedError",
    "NotionTransientError",
    "NotionValidationError",
    "PushResult",
    "RateLimiter",
    "RemotePage",
    "classify_error",
    "describe_error",
    # Orchestration
    "CycleResult",
    "SyncOrchestrator",
    "DrainResult",
    "SyncQueueProcessor",
]
