"""Request admission facade.

Wires identity resolution, tier resolution and the sliding-window engine
over the configured backend:

    metadata -> identity key -> tier -> limit -> engine.check -> Admission

A guard without a redis client uses its own in-memory backend and owns
the eviction sweeper for it. Guards never share counters, so several can
live in one process (for example one per route group).
"""

from collections.abc import Mapping
from typing import Any, Callable, Optional

from ratewarden.app.core.config import DEFAULT_KEY_PREFIX, DEFAULT_WINDOW_MS, Settings
from ratewarden.app.core.logging import get_logger
from ratewarden.app.core.utils import Clock, now_ms
from ratewarden.app.exceptions import StrategyError
from ratewarden.app.services.identity import (
    Identity,
    IdentitySource,
    RequestMetadata,
    resolve_identity,
)
from ratewarden.app.services.rate_limit.backends.base import RateLimitBackend
from ratewarden.app.services.rate_limit.backends.memory import InMemoryBackend
from ratewarden.app.services.rate_limit.backends.shared import RedisBackend
from ratewarden.app.services.rate_limit.limiter import SlidingWindowLimiter
from ratewarden.app.services.rate_limit.models import Admission, BackendStats
from ratewarden.app.services.rate_limit.sweeper import EvictionSweeper
from ratewarden.app.services.tier import TierResolver, TierTable, resolve_tier, validate_resolver

logger = get_logger(__name__)

# Custom key generator: returns the bucket key for a request.
KeyGenerator = Callable[[RequestMetadata], str]


class RateGuard:
    """Identity-aware, tier-based admission control."""

    def __init__(
        self,
        window_ms: int = DEFAULT_WINDOW_MS,
        tiers: Optional[Mapping[str, Any]] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        redis_client: Optional[Any] = None,
        resolve_tier: Optional[TierResolver] = None,
        key_generator: Optional[KeyGenerator] = None,
        clock: Clock = now_ms,
        redis_timeout_seconds: Optional[float] = None,
        sweep_interval_seconds: Optional[float] = None,
    ) -> None:
        """Initialize the guard.

        Args:
            window_ms: Window length in milliseconds
            tiers: Tier name to limit (None = unbounded); defaults apply when omitted
            key_prefix: Redis key namespace (shared backend only)
            redis_client: Connected ``redis.asyncio`` client; selects the
                shared backend. The caller keeps ownership of it.
            resolve_tier: Optional strategy ``(metadata) -> tier name``
            key_generator: Optional strategy ``(metadata) -> bucket key``
                replacing identity resolution
            clock: Time source returning epoch milliseconds
            redis_timeout_seconds: Bound on each shared-store call
            sweep_interval_seconds: Sweeper period (defaults to the window)

        Raises:
            InvalidConfigurationError: On an invalid window, tier table or
                non-callable strategy
        """
        self.tiers = TierTable(tiers)
        self._resolve_tier = validate_resolver(resolve_tier, "resolve_tier")
        self._key_generator = validate_resolver(key_generator, "key_generator")

        if redis_client is not None:
            self.backend: RateLimitBackend = RedisBackend(
                redis_client,
                prefix=key_prefix,
                timeout_seconds=redis_timeout_seconds,
            )
            logger.info("Using Redis rate limiter backend", extra={"backend": "redis"})
        else:
            self.backend = InMemoryBackend()
            logger.debug("Using in-memory rate limiter backend", extra={"backend": "memory"})

        self.limiter = SlidingWindowLimiter(self.backend, window_ms=window_ms, clock=clock)

        self.sweeper: Optional[EvictionSweeper] = None
        if isinstance(self.backend, InMemoryBackend):
            self.sweeper = EvictionSweeper(self.limiter, interval_seconds=sweep_interval_seconds)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        redis_client: Optional[Any] = None,
        **overrides: Any,
    ) -> "RateGuard":
        """Build a guard from ``Settings``; keyword overrides win."""
        options: dict[str, Any] = {
            "window_ms": settings.window_ms,
            "tiers": settings.tiers,
            "key_prefix": settings.key_prefix,
            "redis_timeout_seconds": settings.redis_timeout_seconds,
        }
        if settings.sweep_interval_ms is not None:
            options["sweep_interval_seconds"] = settings.sweep_interval_ms / 1000
        options.update(overrides)
        return cls(redis_client=redis_client, **options)

    @property
    def window_ms(self) -> int:
        return self.limiter.window_ms

    def identify(self, metadata: RequestMetadata) -> Identity:
        """Resolve the bucket key, honouring a custom key generator.

        Raises:
            StrategyError: If the key generator raises or returns an empty key
        """
        if self._key_generator is not None:
            try:
                key = self._key_generator(metadata)
            except Exception as e:
                raise StrategyError("key_generator", f"{type(e).__name__}: {e}") from e
            if not key:
                raise StrategyError("key_generator", "returned an empty key")
            return Identity(key=str(key), source=IdentitySource.CUSTOM)
        return resolve_identity(metadata)

    async def admit(self, metadata: RequestMetadata) -> Admission:
        """Resolve identity and tier, then check the request against its quota.

        Raises:
            StrategyError: If an injected resolver or key generator fails
            BackendUnavailableError: If the shared store cannot answer
        """
        identity = self.identify(metadata)
        tier = resolve_tier(metadata, identity.source, self._resolve_tier)
        limit = self.tiers.limit_for(tier)
        decision = await self.limiter.check(identity.key, limit, tier=tier)
        return Admission(
            identity_key=identity.key,
            identity_source=identity.source,
            tier=tier,
            limit=limit,
            decision=decision,
        )

    async def start(self) -> None:
        """Start background maintenance (the sweeper, local backend only)."""
        if self.sweeper is not None:
            await self.sweeper.start()

    async def close(self) -> None:
        """Stop the sweeper and release backend-owned state."""
        if self.sweeper is not None:
            await self.sweeper.stop()
        await self.backend.close()

    async def get_stats(self) -> BackendStats:
        return await self.backend.get_stats()

    async def reset(self, identity_key: Optional[str] = None, tier: Optional[str] = None) -> None:
        """Reset one identity's window (in ``tier``) or all limits."""
        if identity_key is None:
            await self.backend.reset()
        else:
            if tier is None:
                raise ValueError("tier is required to reset a single identity")
            await self.backend.reset(identity_key, tier=tier)

    async def is_ready(self) -> bool:
        return await self.backend.is_ready()
