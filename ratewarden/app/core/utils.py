"""Utility functions for the admission-control engine."""

import math
import time
from typing import Callable, Optional

# Clock signature used throughout: returns Unix epoch milliseconds.
Clock = Callable[[], int]


def now_ms() -> int:
    """Return the current Unix time in whole milliseconds."""
    return time.time_ns() // 1_000_000


def ceil_seconds(milliseconds: float) -> int:
    """Convert milliseconds to whole seconds, always rounding up.

    Examples:
        >>> ceil_seconds(1000)
        1
        >>> ceil_seconds(1001)
        2
        >>> ceil_seconds(0)
        0
    """
    return math.ceil(milliseconds / 1000)


def is_unbounded(limit: Optional[float]) -> bool:
    """Return True when ``limit`` denotes an unbounded tier (None or +inf)."""
    return limit is None or (isinstance(limit, float) and math.isinf(limit) and limit > 0)


def short_hash(identity_key: str, length: int = 12) -> str:
    """Truncate an identity key for logging.

    Identity keys are already digests; the prefix is enough to correlate
    log lines without printing the full bucket name.
    """
    return identity_key[:length]
