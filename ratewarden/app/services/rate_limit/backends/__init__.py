"""Counting backends: in-process and Redis-shared."""

from ratewarden.app.services.rate_limit.backends.base import DEFAULT_TIER, RateLimitBackend
from ratewarden.app.services.rate_limit.backends.memory import InMemoryBackend
from ratewarden.app.services.rate_limit.backends.shared import RedisBackend

__all__ = [
    "DEFAULT_TIER",
    "RateLimitBackend",
    "InMemoryBackend",
    "RedisBackend",
]
