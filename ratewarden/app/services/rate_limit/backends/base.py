"""Counting backend interface.

The engine depends on this abstraction, never on a concrete store, so the
in-process and shared implementations are interchangeable.
"""

from abc import ABC, abstractmethod
from typing import Optional

from ratewarden.app.services.rate_limit.models import BackendStats, WindowSnapshot

DEFAULT_TIER = "default"


class RateLimitBackend(ABC):
    """Abstract base class for rate limit backends.

    Every backend stores, per (tier, identity key) pair, the timestamps of
    admitted requests still inside the trailing window.
    """

    name: str = "abstract"

    @abstractmethod
    async def hit(
        self,
        identity_key: str,
        limit: int,
        now_ms: int,
        window_ms: int,
        tier: str = DEFAULT_TIER,
    ) -> WindowSnapshot:
        """Prune, count and conditionally record one request, atomically.

        Timestamps ``<= now_ms - window_ms`` are dropped first. If the
        remaining count is below ``limit``, ``now_ms`` is appended.

        Args:
            identity_key: Hashed caller identity
            limit: Maximum requests in the window (bounded)
            now_ms: Request time in epoch milliseconds
            window_ms: Window length in milliseconds
            tier: Tier name, part of the bucket key

        Returns:
            WindowSnapshot describing the sequence after this step

        Raises:
            BackendUnavailableError: If the store cannot answer
        """

    @abstractmethod
    async def cleanup(self, now_ms: int, window_ms: int) -> int:
        """Discard fully-expired histories.

        Returns:
            Number of identities removed
        """

    @abstractmethod
    async def get_stats(self) -> BackendStats:
        """Return the number of tracked identities and counted requests."""

    @abstractmethod
    async def reset(self, identity_key: Optional[str] = None, tier: str = DEFAULT_TIER) -> None:
        """Clear one identity's history, or everything when no key is given."""

    async def is_ready(self) -> bool:
        """Check whether the backend can serve requests."""
        return True

    async def close(self) -> None:
        """Release backend-owned resources."""
