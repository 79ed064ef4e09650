"""Periodic cleanup of rate-limit windows and expired CSRF tokens.

The sweeper runs as a background task and only ever issues
compare-and-update changes against the values it observed, so it can run
alongside live traffic without clobbering concurrent updates.
"""

import asyncio
import logging
from typing import Dict, Optional

from reqshield.app.services.csrf import CsrfGuard
from reqshield.app.services.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


class BackgroundSweeper:
    """Runs the limiter and guard sweeps on a fixed interval.

    Usage:
        sweeper = BackgroundSweeper(limiter, guard, interval=60.0)
        await sweeper.start()
        ...
        await sweeper.stop()
    """

    def __init__(
        self,
        rate_limiter: Optional[RateLimiter] = None,
        csrf_guard: Optional[CsrfGuard] = None,
        interval: float = 60.0,
    ):
        """Initialize the sweeper.

        Args:
            rate_limiter: Limiter whose idle windows are pruned
            csrf_guard: Guard whose expired tokens are removed
            interval: Seconds between sweeps
        """
        self._rate_limiter = rate_limiter
        self._csrf_guard = csrf_guard
        self._interval = interval
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._task is not None

    async def run_once(self) -> Dict[str, int]:
        """Run one sweep of every component.

        A failure in one component is logged and does not stop the other.

        Returns:
            Number of entries removed per component
        """
        removed: Dict[str, int] = {}
        if self._rate_limiter is not None:
            try:
                removed["rate_limit"] = await self._rate_limiter.sweep()
            except Exception as e:
                logger.error(f"Rate limit sweep failed: {e}")
        if self._csrf_guard is not None:
            try:
                removed["csrf"] = await self._csrf_guard.sweep()
            except Exception as e:
                logger.error(f"CSRF sweep failed: {e}")
        return removed

    async def start(self) -> None:
        """Start the background sweep task."""
        if self._task is not None:
            logger.debug("Sweeper already running")
            return

        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        logger.info(f"Started state sweeper (interval: {self._interval}s)")

    async def stop(self) -> None:
        """Stop the background sweep task."""
        if self._task is None:
            return

        self._stop_event.set()

        try:
            await asyncio.wait_for(self._task, timeout=5.0)
        except asyncio.TimeoutError:
            logger.warning("Sweeper task did not stop gracefully, cancelling")
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        finally:
            self._task = None
            logger.info("Stopped state sweeper")

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            await self.run_once()

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                pass
