"""Exponential backoff with jitter.

Used both for retrying a single Notion request and for spacing out retries
of a failed sync queue entry.
"""

import random
from typing import Callable, Optional


def base_delay(attempt: int, base: float, cap: float) -> float:
    """Capped exponential delay: ``min(cap, base * 2**attempt)``.

    Example:
        >>> base_delay(3, 1.0, 30.0)
        8.0
        >>> base_delay(10, 1.0, 30.0)
        30.0
    """
    if attempt < 0:
        attempt = 0
    # Avoid float overflow for very large attempt counts
    if attempt > 62:
        return float(cap)
    return float(min(cap, base * (2**attempt)))


def backoff_delay(
    attempt: int,
    base: float,
    cap: float,
    jitter_ratio: float = 0.25,
    rng: Optional[Callable[[], float]] = None,
) -> float:
    """Backoff delay plus non-negative random jitter.

    Args:
        attempt: Zero-based attempt (or retry count)
        base: Delay for attempt 0, in seconds
        cap: Maximum delay before jitter, in seconds
        jitter_ratio: Jitter is up to this fraction of the capped delay
        rng: Source of uniform floats in [0, 1); random.random if not provided

    Returns:
        Delay in seconds
    """
    delay = base_delay(attempt, base, cap)
    rand = rng or random.random
    return delay + delay * jitter_ratio * rand()
