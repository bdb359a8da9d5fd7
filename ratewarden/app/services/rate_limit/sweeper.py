"""Periodic eviction of expired identities from the local backend.

The shared backend needs no sweeper: Redis reclaims abandoned keys
through their TTL.
"""

import asyncio
from typing import Optional

from ratewarden.app.core.logging import get_logger
from ratewarden.app.services.rate_limit.limiter import SlidingWindowLimiter

logger = get_logger(__name__)


class EvictionSweeper:
    """Background task that prunes the limiter's backend on a fixed interval.

    The interval defaults to the window length. Sweeping is hygiene only:
    no single decision depends on it.
    """

    STOP_TIMEOUT_SECONDS = 5.0

    def __init__(
        self,
        limiter: SlidingWindowLimiter,
        interval_seconds: Optional[float] = None,
    ) -> None:
        if interval_seconds is None:
            interval_seconds = limiter.window_ms / 1000
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self._limiter = limiter
        self.interval_seconds = interval_seconds
        self._task: Optional[asyncio.Task] = None
        self._shutdown_event = asyncio.Event()
        self.sweeps = 0

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start periodic sweeping (no-op if already running)."""
        if self._task is not None:
            return
        self._shutdown_event.clear()
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(
            f"Started eviction sweeper (every {self.interval_seconds:g}s)",
            extra={"backend": self._limiter.backend.name},
        )

    async def stop(self) -> None:
        """Stop the sweeper and wait for the current sweep to finish."""
        if self._task is None:
            return
        self._shutdown_event.set()
        try:
            await asyncio.wait_for(self._task, timeout=self.STOP_TIMEOUT_SECONDS)
        except asyncio.TimeoutError:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        self._task = None
        logger.info("Stopped eviction sweeper")

    async def sweep_once(self) -> int:
        """Run one sweep immediately."""
        removed = await self._limiter.sweep()
        self.sweeps += 1
        return removed

    async def _sweep_loop(self) -> None:
        """Background loop for periodic sweeping."""
        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(
                    self._shutdown_event.wait(),
                    timeout=self.interval_seconds,
                )
            except asyncio.TimeoutError:
                pass
            if self._shutdown_event.is_set():
                break
            try:
                await self.sweep_once()
            except Exception as e:
                logger.error(f"Error during eviction sweep: {e}")
