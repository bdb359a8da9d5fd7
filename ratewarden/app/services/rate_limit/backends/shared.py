"""Redis-based distributed counting backend.

Each (tier, identity) pair is a sorted set ``{prefix}{tier}:{identity_key}``
whose scores are admission timestamps in milliseconds and whose members
are unique per request, so two requests in the same millisecond both count.

The prune/count/read-oldest/conditional-add sequence runs in a single Lua
script (see ``redis_lua``), which gives the all-or-nothing
read-then-conditional-write the algorithm needs. This assumes the store is
a single Redis primary (or a cluster slot owner); against an eventually
consistent replica set the quota becomes advisory.

The client is owned by the caller: this backend never connects or
disconnects it.
"""

import asyncio
import uuid
from typing import Any, Optional

import redis

from ratewarden.app.core.config import DEFAULT_KEY_PREFIX
from ratewarden.app.core.logging import get_logger
from ratewarden.app.exceptions import BackendUnavailableError, InvalidConfigurationError
from ratewarden.app.services.rate_limit.backends.base import DEFAULT_TIER, RateLimitBackend
from ratewarden.app.services.rate_limit.backends.redis_lua import SLIDING_WINDOW_SCRIPT
from ratewarden.app.services.rate_limit.models import BackendStats, WindowSnapshot

logger = get_logger(__name__)

# Keys outlive the window so abandoned identities are reclaimed by Redis
# itself even if no further request arrives.
TTL_WINDOW_MULTIPLIER = 2


def _to_int(value: Any) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode()
    if value == "":
        return None
    return int(float(value))


class RedisBackend(RateLimitBackend):
    """Redis sorted-set sliding window backend.

    Transport errors and timeouts are surfaced as
    ``BackendUnavailableError``; they are never retried inline or turned
    into an allow/deny answer.
    """

    name = "redis"

    SCAN_COUNT = 500

    def __init__(
        self,
        redis_client: Any,
        prefix: str = DEFAULT_KEY_PREFIX,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        """Initialize Redis backend.

        Args:
            redis_client: Connected ``redis.asyncio`` client
            prefix: Key namespace
            timeout_seconds: Upper bound for each store call (None relies on
                the client's own socket timeout)

        Raises:
            InvalidConfigurationError: If no client is given
        """
        if redis_client is None:
            raise InvalidConfigurationError(
                "a connected redis client is required for the shared backend"
            )
        if timeout_seconds is not None and timeout_seconds <= 0:
            raise InvalidConfigurationError("timeout_seconds must be positive")
        self._redis = redis_client
        self.prefix = prefix
        self._timeout = timeout_seconds

    def make_key(self, identity_key: str, tier: str = DEFAULT_TIER) -> str:
        """Create Redis key for an identity's window."""
        return f"{self.prefix}{tier}:{identity_key}"

    async def _call(self, operation: str, awaitable: Any) -> Any:
        try:
            if self._timeout is None:
                return await awaitable
            return await asyncio.wait_for(awaitable, timeout=self._timeout)
        except asyncio.TimeoutError as e:
            logger.error(f"Redis timeout during {operation}", extra={"backend": self.name})
            raise BackendUnavailableError(operation, "timed out") from e
        except redis.RedisError as e:
            logger.error(f"Redis error during {operation}: {e}", extra={"backend": self.name})
            raise BackendUnavailableError(operation, str(e)) from e

    async def hit(
        self,
        identity_key: str,
        limit: int,
        now_ms: int,
        window_ms: int,
        tier: str = DEFAULT_TIER,
    ) -> WindowSnapshot:
        """Check if request is allowed using the sliding window script."""
        key = self.make_key(identity_key, tier)
        member = f"{now_ms}-{uuid.uuid4().hex[:12]}"
        result = await self._call(
            "hit",
            self._redis.eval(
                SLIDING_WINDOW_SCRIPT,
                1,  # Number of keys
                key,  # KEYS[1]
                now_ms,  # ARGV[1]
                now_ms - window_ms,  # ARGV[2]
                limit,  # ARGV[3]
                member,  # ARGV[4]
                window_ms * TTL_WINDOW_MULTIPLIER,  # ARGV[5]
            ),
        )
        return WindowSnapshot(
            admitted=bool(int(result[0])),
            count=int(result[1]),
            oldest_ms=_to_int(result[2]),
        )

    async def cleanup(self, now_ms: int, window_ms: int) -> int:
        """No-op for Redis (keys expire automatically)."""
        return 0

    async def _scan_keys(self, operation: str) -> list:
        async def collect() -> list:
            return [
                key
                async for key in self._redis.scan_iter(
                    match=f"{self.prefix}*", count=self.SCAN_COUNT
                )
            ]

        return await self._call(operation, collect())

    async def get_stats(self) -> BackendStats:
        """Approximate stats: scans every key under the prefix."""
        keys = await self._scan_keys("get_stats")
        total_requests = 0
        for key in keys:
            total_requests += int(await self._call("get_stats", self._redis.zcard(key)))
        return BackendStats(total_identities=len(keys), total_requests=total_requests)

    async def reset(self, identity_key: Optional[str] = None, tier: str = DEFAULT_TIER) -> None:
        """Delete one identity's window, or every key under the prefix."""
        if identity_key is not None:
            await self._call("reset", self._redis.delete(self.make_key(identity_key, tier)))
            return
        keys = await self._scan_keys("reset")
        if keys:
            await self._call("reset", self._redis.delete(*keys))

    async def is_ready(self) -> bool:
        try:
            await self._call("ping", self._redis.ping())
        except BackendUnavailableError:
            return False
        return True

    async def close(self) -> None:
        """Leave the caller-owned client open."""
