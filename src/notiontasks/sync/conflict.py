"""Field-level conflict resolution for sync operations.

When a record has unpushed local edits and a newer remote version arrives,
each field is resolved independently: the side that changed it wins, and if
both sides changed it the later field timestamp wins (remote on exact ties).
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Protocol

_MISSING = object()


class FieldSource(str, Enum):
    """Which side a merged field value came from."""

    LOCAL = "local"
    REMOTE = "remote"
    UNCHANGED = "unchanged"  # Neither side changed the field


class LocalState(Protocol):
    """Anything shaped like an entity record (ORM row or test double)."""

    def get_payload(self) -> dict[str, Any]: ...

    def get_synced_payload(self) -> dict[str, Any]: ...

    def get_field_local_ts(self) -> dict[str, int]: ...

    def get_field_notion_ts(self) -> dict[str, int]: ...


@dataclass
class RemoteChange:
    """A remote version of a record as seen by a pull."""

    payload: dict[str, Any]
    timestamp: int  # page last_edited_time, ms
    field_timestamps: Optional[dict[str, int]] = None

    def timestamp_for(self, name: str) -> int:
        if self.field_timestamps and name in self.field_timestamps:
            return self.field_timestamps[name]
        return self.timestamp


@dataclass
class Resolution:
    """Outcome of merging a local record with a remote change."""

    merged_payload: dict[str, Any]
    field_sources: dict[str, FieldSource] = field(default_factory=dict)
    remote_changed: set[str] = field(default_factory=set)

    def fields_from(self, source: FieldSource) -> list[str]:
        return sorted(f for f, s in self.field_sources.items() if s == source)

    def overridden_fields(self, local_changed: list[str]) -> list[str]:
        """Local edits that lost to the remote value."""
        return sorted(
            f for f in local_changed if self.field_sources.get(f) == FieldSource.REMOTE
        )


def is_locally_changed(local: LocalState, name: str) -> bool:
    """A field has an unpushed local edit if its local stamp is newer than the remote one."""
    local_ts = local.get_field_local_ts().get(name)
    if local_ts is None:
        return False
    return local_ts > local.get_field_notion_ts().get(name, 0)


def resolve(local: LocalState, remote: RemoteChange) -> Resolution:
    """Merge a remote change into a local record field by field.

    Args:
        local: Local record with payload and per-field timestamps
        remote: Incoming remote payload and its timestamp(s)

    Returns:
        Resolution with the merged payload and the winning side per field
    """
    local_payload = local.get_payload()
    synced = local.get_synced_payload()
    local_ts = local.get_field_local_ts()

    merged: dict[str, Any] = {}
    sources: dict[str, FieldSource] = {}
    remote_changed: set[str] = set()

    for name in sorted(set(local_payload) | set(remote.payload)):
        local_value = local_payload.get(name, _MISSING)
        remote_value = remote.payload.get(name, _MISSING)

        changed_here = is_locally_changed(local, name)
        changed_there = False
        if remote_value is not _MISSING:
            base = synced.get(name, local_value)
            changed_there = remote_value != base
        if changed_there:
            remote_changed.add(name)

        if changed_here and changed_there:
            if local_ts[name] > remote.timestamp_for(name):
                source = FieldSource.LOCAL
            else:
                source = FieldSource.REMOTE
        elif changed_here:
            source = FieldSource.LOCAL
        elif changed_there:
            source = FieldSource.REMOTE
        else:
            source = FieldSource.UNCHANGED

        if source == FieldSource.REMOTE:
            merged[name] = remote_value
        elif local_value is not _MISSING:
            merged[name] = local_value
        elif source == FieldSource.UNCHANGED:
            merged[name] = remote_value
        # else: removed locally, stays removed
        sources[name] = source

    return Resolution(merged_payload=merged, field_sources=sources, remote_changed=remote_changed)
