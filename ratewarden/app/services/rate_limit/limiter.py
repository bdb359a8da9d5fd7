"""Sliding-window admission engine.

The engine is stateless between calls: every check is a fresh
read-modify-write against the configured backend, and the decision
arithmetic (remaining quota, reset time, retry delay) is derived from the
backend's snapshot so both backends answer identically.
"""

from typing import Optional

from ratewarden.app.core.config import DEFAULT_WINDOW_MS
from ratewarden.app.core.utils import Clock, ceil_seconds, is_unbounded, now_ms
from ratewarden.app.exceptions import InvalidConfigurationError
from ratewarden.app.services.rate_limit.backends.base import DEFAULT_TIER, RateLimitBackend
from ratewarden.app.services.rate_limit.models import Decision, WindowSnapshot


class SlidingWindowLimiter:
    """Decide allow/deny for an identity key against a per-window limit."""

    def __init__(
        self,
        backend: RateLimitBackend,
        window_ms: int = DEFAULT_WINDOW_MS,
        clock: Clock = now_ms,
    ) -> None:
        """Initialize the engine.

        Args:
            backend: Counting backend holding all window state
            window_ms: Window length in milliseconds
            clock: Time source returning epoch milliseconds

        Raises:
            InvalidConfigurationError: If window_ms is not a positive integer
        """
        if isinstance(window_ms, bool) or not isinstance(window_ms, int) or window_ms < 1:
            raise InvalidConfigurationError(f"window_ms must be a positive integer, got {window_ms!r}")
        self.backend = backend
        self.window_ms = window_ms
        self._clock = clock

    def now(self) -> int:
        return int(self._clock())

    async def check(
        self,
        identity_key: str,
        limit: Optional[float],
        tier: str = DEFAULT_TIER,
    ) -> Decision:
        """Check and, if allowed, record one request.

        Args:
            identity_key: Hashed caller identity
            limit: Requests allowed per window; None or ``math.inf`` for an
                unbounded tier
            tier: Tier name, used to namespace the window

        Returns:
            Decision for this request

        Raises:
            ValueError: If identity_key is empty or limit is negative
            BackendUnavailableError: If the backend cannot answer
        """
        if not identity_key:
            raise ValueError("identity_key must be a non-empty string")

        now = self.now()

        # Unbounded tiers are not recorded: current stays 0 and the backend
        # holds no history for them.
        if is_unbounded(limit):
            return Decision(
                allowed=True,
                current=0,
                remaining=None,
                reset_epoch_seconds=ceil_seconds(now + self.window_ms),
                retry_after_seconds=0,
            )

        if limit < 0:
            raise ValueError("limit must be >= 0")
        limit = int(limit)

        snapshot = await self.backend.hit(
            identity_key,
            limit=limit,
            now_ms=now,
            window_ms=self.window_ms,
            tier=tier,
        )
        return self._build_decision(snapshot, limit, now)

    def _build_decision(self, snapshot: WindowSnapshot, limit: int, now: int) -> Decision:
        if snapshot.oldest_ms is not None:
            expires_at = snapshot.oldest_ms + self.window_ms
        else:
            expires_at = now + self.window_ms
        reset_at = ceil_seconds(expires_at)

        if snapshot.admitted:
            return Decision(
                allowed=True,
                current=snapshot.count,
                remaining=max(0, limit - snapshot.count),
                reset_epoch_seconds=reset_at,
                retry_after_seconds=0,
            )

        return Decision(
            allowed=False,
            current=snapshot.count,
            remaining=0,
            reset_epoch_seconds=reset_at,
            retry_after_seconds=max(1, ceil_seconds(expires_at - now)),
        )

    async def sweep(self) -> int:
        """Let the backend discard fully-expired histories."""
        return await self.backend.cleanup(self.now(), self.window_ms)
