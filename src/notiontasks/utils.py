"""Utility functions for notiontasks.

Timestamps are carried around as integer milliseconds since the Unix epoch;
Notion reports ISO-8601 strings, so these helpers convert between the two.
"""

import time
from datetime import datetime, timezone
from typing import Optional


def now_ms() -> int:
    """
    Current wall-clock time in milliseconds since the epoch.

    Example:
        >>> now_ms() > 1_600_000_000_000
        True
    """
    return int(time.time() * 1000)


def iso_to_ms(value: Optional[str]) -> Optional[int]:
    """
    Parse an ISO-8601 timestamp into epoch milliseconds.

    Args:
        value: Timestamp such as ``2025-01-15T15:30:00.000Z``

    Returns:
        Milliseconds since the epoch, or None if the value is empty or invalid

    Example:
        >>> iso_to_ms("1970-01-01T00:00:01.000Z")
        1000
    """
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return round(dt.timestamp() * 1000)


def ms_to_iso(value: Optional[int]) -> Optional[str]:
    """
    Format epoch milliseconds as an ISO-8601 UTC timestamp.

    Example:
        >>> ms_to_iso(1000)
        '1970-01-01T00:00:01.000Z'
    """
    if value is None:
        return None
    seconds, millis = divmod(int(value), 1000)
    dt = datetime.fromtimestamp(seconds, tz=timezone.utc)
    return dt.strftime("%Y-%m-%dT%H:%M:%S.") + f"{millis:03d}Z"
