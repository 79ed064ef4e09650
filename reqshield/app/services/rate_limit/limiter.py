"""Sliding-window rate limiter with a block state.

Once a client exhausts its budget it is frozen for one full window instead
of being re-evaluated request by request. State lives in a StateStore and
every admission is a single compare-and-update on the identity's key, so
concurrent requests for one identity never lose an increment.
"""

import logging
import math
import time
from typing import Callable, Tuple

from reqshield.app.core.logging import get_logger, log_security_event
from reqshield.app.core.store import StateStore
from reqshield.app.exceptions import StoreUnavailableError
from reqshield.app.services.rate_limit.models import (
    RateLimitResult,
    RateLimitStatus,
    RateWindow,
)

logger = get_logger(__name__)


class RateLimiter:
    """Per-identity admission control.

    Usage:
        limiter = RateLimiter(store, max_requests=100, window_seconds=60)
        result = await limiter.admit("ip:10.0.0.5")
        if not result.allowed:
            # respond 429 with result.retry_after
    """

    KEY_PREFIX = "ratelimit:"
    MAX_UPDATE_ATTEMPTS = 50

    def __init__(
        self,
        store: StateStore,
        max_requests: int = 100,
        window_seconds: float = 60.0,
        fail_closed: bool = True,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize rate limiter.

        Args:
            store: Backing state store
            max_requests: Requests admitted per window
            window_seconds: Window length in seconds
            fail_closed: Reject (True) or admit (False) when the store
                cannot be consulted
            clock: Time source returning epoch seconds
        """
        if max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if window_seconds <= 0:
            raise ValueError("window_seconds must be positive")
        self._store = store
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.fail_closed = fail_closed
        self._clock = clock

    def _key(self, identity: str) -> str:
        return f"{self.KEY_PREFIX}{identity}"

    @property
    def _retention(self) -> float:
        # Long enough to outlive a block that starts at the last write
        return self.window_seconds * 2

    async def admit(self, identity: str) -> RateLimitResult:
        """Decide whether one more request from identity is admitted."""
        try:
            return await self._admit(identity)
        except StoreUnavailableError:
            return self._handle_store_failure(identity)

    async def _admit(self, identity: str) -> RateLimitResult:
        key = self._key(identity)
        for _ in range(self.MAX_UPDATE_ATTEMPTS):
            now = self._clock()
            observed = await self._store.get(key)
            window = RateWindow.from_dict(observed) if observed else RateWindow()

            updated, result, tripped = self._decide(window, now)
            new_state = updated.to_dict()
            if new_state == observed:
                # Still blocked, nothing to write
                self._log_rejection(identity, result)
                return result

            if await self._store.compare_and_update(
                key, observed, new_state, ttl=self._retention
            ):
                if tripped:
                    log_security_event(
                        logger,
                        logging.WARNING,
                        "SECURITY_RATE_LIMIT_TRIGGERED",
                        "Rate limit triggered",
                        client_id=identity,
                        requests=len(updated.timestamps),
                    )
                return result
            # Lost the race to a concurrent request, re-read and retry

        logger.error(f"Rate limit state for {identity} too contended to update")
        raise StoreUnavailableError("Rate limit update contention")

    def _decide(
        self, window: RateWindow, now: float
    ) -> Tuple[RateWindow, RateLimitResult, bool]:
        """Apply one request to a window.

        Returns:
            (new window, result, whether this request tripped the block)
        """
        if window.blocked:
            if now < window.block_expiry:
                return window, RateLimitResult(
                    allowed=False,
                    limit=self.max_requests,
                    remaining=0,
                    reset_at=math.ceil(window.block_expiry),
                    retry_after=max(1, math.ceil(window.block_expiry - now)),
                ), False
            # Block lifted
            window = RateWindow()

        cutoff = now - self.window_seconds
        timestamps = [t for t in window.timestamps if t > cutoff]

        if len(timestamps) >= self.max_requests:
            block_expiry = now + self.window_seconds
            return RateWindow(
                timestamps=timestamps, blocked=True, block_expiry=block_expiry
            ), RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=math.ceil(block_expiry),
                retry_after=math.ceil(self.window_seconds),
            ), True

        timestamps.append(now)
        return RateWindow(timestamps=timestamps), RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests - len(timestamps),
            reset_at=math.ceil(now + self.window_seconds),
        ), False

    def _log_rejection(self, identity: str, result: RateLimitResult) -> None:
        log_security_event(
            logger,
            logging.DEBUG,
            "SECURITY_RATE_LIMIT_EXCEEDED",
            "Request rejected while rate limit block is active",
            client_id=identity,
            retry_after=result.retry_after,
        )

    def _handle_store_failure(self, identity: str) -> RateLimitResult:
        """Apply the configured fail-open/fail-closed policy."""
        now = self._clock()
        retry_after = math.ceil(self.window_seconds)
        if self.fail_closed:
            log_security_event(
                logger,
                logging.ERROR,
                "SECURITY_RATE_LIMIT_STORE_FAILURE",
                "Rate limit store unavailable, request denied (fail-closed)",
                client_id=identity,
            )
            return RateLimitResult(
                allowed=False,
                limit=self.max_requests,
                remaining=0,
                reset_at=math.ceil(now + retry_after),
                retry_after=retry_after,
                degraded=True,
            )

        log_security_event(
            logger,
            logging.WARNING,
            "SECURITY_RATE_LIMIT_STORE_FAILURE",
            "Rate limit store unavailable, request allowed (fail-open)",
            client_id=identity,
        )
        return RateLimitResult(
            allowed=True,
            limit=self.max_requests,
            remaining=self.max_requests,
            reset_at=math.ceil(now + retry_after),
            degraded=True,
        )

    async def get_status(self, identity: str) -> RateLimitStatus:
        """Report an identity's current window without recording a request."""
        observed = await self._store.get(self._key(identity))
        if not observed:
            return RateLimitStatus(requests=0, remaining=self.max_requests, blocked=False)

        window = RateWindow.from_dict(observed)
        now = self._clock()
        cutoff = now - self.window_seconds
        recent = [t for t in window.timestamps if t > cutoff]
        blocked = window.blocked and now < window.block_expiry
        return RateLimitStatus(
            requests=len(recent),
            remaining=max(0, self.max_requests - len(recent)),
            blocked=blocked,
            block_expiry=window.block_expiry if window.blocked else None,
        )

    async def clear(self, identity: str) -> None:
        """Forget an identity's window (testing and manual unblock)."""
        await self._store.delete(self._key(identity))

    async def sweep(self) -> int:
        """Prune stale timestamps and drop empty or expired windows.

        Each change is a compare-and-update against the value observed
        during the sweep, so a window touched by a request in the meantime
        is left alone until the next run.

        Returns:
            Number of windows removed
        """
        removed = 0
        for key in await self._store.keys(self.KEY_PREFIX):
            observed = await self._store.get(key)
            if not observed:
                continue

            window = RateWindow.from_dict(observed)
            now = self._clock()
            if window.blocked and now < window.block_expiry:
                continue

            cutoff = now - self.window_seconds
            # A lapsed block clears the window entirely
            live = [] if window.blocked else [t for t in window.timestamps if t > cutoff]
            if not live:
                if await self._store.compare_and_update(key, observed, None):
                    removed += 1
            elif len(live) != len(window.timestamps):
                await self._store.compare_and_update(
                    key, observed, RateWindow(timestamps=live).to_dict(),
                    ttl=self._retention,
                )
        if removed:
            logger.debug(f"Rate limit sweep removed {removed} idle windows")
        return removed
