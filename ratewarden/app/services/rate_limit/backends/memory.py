"""In-process counting backend.

Per (tier, identity) timestamp sequences held in a dict owned by the
instance. Each sequence carries its own lock so concurrent checks for
one caller cannot both read a stale count, while checks for different
callers never contend. The map lock is only held for lookups, inserts
and evictions.

Suitable for single-process deployments: state is lost on restart and
not shared between workers.
"""

import asyncio
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Optional

from ratewarden.app.core.logging import get_logger
from ratewarden.app.services.rate_limit.backends.base import DEFAULT_TIER, RateLimitBackend
from ratewarden.app.services.rate_limit.models import BackendStats, WindowSnapshot

logger = get_logger(__name__)


@dataclass
class _WindowState:
    """Timestamps for one (tier, identity) pair, oldest first."""
    timestamps: Deque[int] = field(default_factory=deque)
    lock: threading.Lock = field(default_factory=threading.Lock)
    evicted: bool = False

    def prune(self, window_start: int) -> None:
        # Half-open window (window_start, now]: a timestamp equal to
        # window_start is already expired.
        while self.timestamps and self.timestamps[0] <= window_start:
            self.timestamps.popleft()


class InMemoryBackend(RateLimitBackend):
    """In-memory sliding window backend.

    Memory is bounded only by ``cleanup`` (driven by the eviction sweeper);
    between sweeps an idle identity keeps an empty or near-empty entry.
    """

    name = "memory"

    # Yield to the event loop every N keys while sweeping
    SWEEP_BATCH_SIZE = 500

    def __init__(self) -> None:
        self._windows: Dict[str, _WindowState] = {}
        self._map_lock = threading.Lock()

    @staticmethod
    def _slot(identity_key: str, tier: str) -> str:
        return f"{tier}:{identity_key}"

    def _acquire(self, slot: str) -> _WindowState:
        """Return the live state for ``slot`` with its lock held.

        Key and map locks are threading locks and are never held across an
        ``await``, so contention only ever lasts one deque update.
        """
        while True:
            with self._map_lock:
                state = self._windows.get(slot)
                if state is None:
                    state = _WindowState()
                    self._windows[slot] = state
            state.lock.acquire()
            if not state.evicted:
                return state
            # Swept between lookup and lock; retry against the fresh entry.
            state.lock.release()

    async def hit(
        self,
        identity_key: str,
        limit: int,
        now_ms: int,
        window_ms: int,
        tier: str = DEFAULT_TIER,
    ) -> WindowSnapshot:
        """Check using the sliding window algorithm."""
        state = self._acquire(self._slot(identity_key, tier))
        try:
            state.prune(now_ms - window_ms)
            count = len(state.timestamps)

            if count >= limit:
                oldest = state.timestamps[0] if state.timestamps else None
                return WindowSnapshot(admitted=False, count=count, oldest_ms=oldest)

            state.timestamps.append(now_ms)
            return WindowSnapshot(
                admitted=True,
                count=count + 1,
                oldest_ms=state.timestamps[0],
            )
        finally:
            state.lock.release()

    async def cleanup(self, now_ms: int, window_ms: int) -> int:
        """Prune every key and drop the ones left empty.

        Only one key's lock is held at a time so live checks are never
        stalled for the length of a full sweep.
        """
        window_start = now_ms - window_ms
        with self._map_lock:
            slots = list(self._windows)

        removed = 0
        for index, slot in enumerate(slots, start=1):
            with self._map_lock:
                state = self._windows.get(slot)
            if state is not None:
                with state.lock:
                    if not state.evicted:
                        state.prune(window_start)
                        if not state.timestamps:
                            with self._map_lock:
                                if self._windows.get(slot) is state:
                                    del self._windows[slot]
                            state.evicted = True
                            removed += 1
            if index % self.SWEEP_BATCH_SIZE == 0:
                await asyncio.sleep(0)

        if removed:
            logger.debug(f"Evicted {removed} expired identities", extra={"backend": self.name})
        return removed

    async def get_stats(self) -> BackendStats:
        with self._map_lock:
            states = list(self._windows.values())
        return BackendStats(
            total_identities=len(states),
            total_requests=sum(len(s.timestamps) for s in states),
        )

    async def reset(self, identity_key: Optional[str] = None, tier: str = DEFAULT_TIER) -> None:
        """Reset one identity or all limits."""
        with self._map_lock:
            if identity_key is None:
                states = list(self._windows.values())
                self._windows.clear()
            else:
                state = self._windows.pop(self._slot(identity_key, tier), None)
                states = [state] if state is not None else []
        for state in states:
            with state.lock:
                state.evicted = True
                state.timestamps.clear()

    async def close(self) -> None:
        """Drop all in-memory state."""
        await self.reset()
