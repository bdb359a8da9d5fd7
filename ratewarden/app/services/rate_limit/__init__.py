"""Sliding-window admission control.

Supports an in-memory backend for single-process deployments and a
Redis backend for counters shared by several processes.
"""

# Re-export models
from ratewarden.app.services.rate_limit.models import (
    Admission,
    BackendStats,
    Decision,
    WindowSnapshot,
)

# Re-export backends
from ratewarden.app.services.rate_limit.backends import (
    DEFAULT_TIER,
    InMemoryBackend,
    RateLimitBackend,
    RedisBackend,
)

from ratewarden.app.services.rate_limit.limiter import SlidingWindowLimiter
from ratewarden.app.services.rate_limit.sweeper import EvictionSweeper
from ratewarden.app.services.rate_limit.guard import RateGuard

__all__ = [
    # Models
    "Admission",
    "BackendStats",
    "Decision",
    "WindowSnapshot",
    # Backends
    "DEFAULT_TIER",
    "RateLimitBackend",
    "InMemoryBackend",
    "RedisBackend",
    # Main classes
    "SlidingWindowLimiter",
    "EvictionSweeper",
    "RateGuard",
]
