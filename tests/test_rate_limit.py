"""Tests for the sliding-window rate limiter."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from reqshield.app.core.store import InMemoryStore
from reqshield.app.exceptions import StoreUnavailableError
from reqshield.app.services.rate_limit import RateLimiter, RateLimitResult, RateWindow


class TestRateLimiterAdmission:
    """Tests for admit()."""

    @pytest.fixture
    def limiter(self, store, clock):
        return RateLimiter(store, max_requests=3, window_seconds=60, clock=clock)

    @pytest.mark.asyncio
    async def test_client_scenario(self, limiter, clock):
        """Three admitted, the fourth trips a full-window block."""
        identity = "ip:10.0.0.5"

        clock.set(0)
        result = await limiter.admit(identity)
        assert result.allowed is True
        assert result.remaining == 2

        clock.set(10)
        result = await limiter.admit(identity)
        assert result.allowed is True
        assert result.remaining == 1

        clock.set(20)
        result = await limiter.admit(identity)
        assert result.allowed is True
        assert result.remaining == 0

        clock.set(30)
        result = await limiter.admit(identity)
        assert result.allowed is False
        assert result.retry_after == 60

        # Still inside the block even though the oldest request aged out
        clock.set(61)
        result = await limiter.admit(identity)
        assert result.allowed is False
        assert result.retry_after == 29

        clock.set(91)
        result = await limiter.admit(identity)
        assert result.allowed is True
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_old_timestamps_are_pruned(self, limiter, clock):
        """Requests older than the window stop counting."""
        clock.set(0)
        for _ in range(3):
            await limiter.admit("ip:1.2.3.4")

        # Exactly one window later the first requests no longer count
        clock.set(60)
        result = await limiter.admit("ip:1.2.3.4")
        assert result.allowed is True
        assert result.remaining == 2

    @pytest.mark.asyncio
    async def test_identities_are_independent(self, limiter, clock):
        clock.set(0)
        for _ in range(3):
            await limiter.admit("ip:1.1.1.1")
        blocked = await limiter.admit("ip:1.1.1.1")
        other = await limiter.admit("ip:2.2.2.2")

        assert blocked.allowed is False
        assert other.allowed is True

    @pytest.mark.asyncio
    async def test_rejection_carries_reset_and_limit(self, limiter, clock):
        clock.set(100)
        for _ in range(3):
            await limiter.admit("k")
        result = await limiter.admit("k")

        assert result.limit == 3
        assert result.remaining == 0
        assert result.reset_at == 160

    @pytest.mark.asyncio
    async def test_block_logs_trigger_event_once(self, limiter, clock):
        clock.set(0)
        with patch("reqshield.app.services.rate_limit.limiter.log_security_event") as log_event:
            for _ in range(5):
                await limiter.admit("ip:10.0.0.5")

        codes = [call.args[2] for call in log_event.call_args_list]
        assert codes.count("SECURITY_RATE_LIMIT_TRIGGERED") == 1

    @pytest.mark.asyncio
    async def test_concurrent_admissions_never_exceed_limit(self, clock):
        """Interleaved requests for one identity never lose an increment."""
        store = InMemoryStore(clock=clock)
        limiter = RateLimiter(store, max_requests=10, window_seconds=60, clock=clock)

        results = await asyncio.gather(*(limiter.admit("ip:9.9.9.9") for _ in range(25)))

        assert sum(1 for r in results if r.allowed) == 10
        status = await limiter.get_status("ip:9.9.9.9")
        assert status.requests == 10
        assert status.blocked is True

    def test_invalid_configuration(self, store):
        with pytest.raises(ValueError):
            RateLimiter(store, max_requests=0)
        with pytest.raises(ValueError):
            RateLimiter(store, window_seconds=0)


class TestRateLimiterStoreFailure:
    """Tests for the fail-open/fail-closed policy."""

    @pytest.fixture
    def broken_store(self):
        store = AsyncMock()
        store.get.side_effect = StoreUnavailableError()
        return store

    @pytest.mark.asyncio
    async def test_fail_closed_rejects(self, broken_store, clock):
        limiter = RateLimiter(broken_store, max_requests=3, window_seconds=60, clock=clock)
        result = await limiter.admit("ip:10.0.0.5")

        assert result.allowed is False
        assert result.degraded is True
        assert result.retry_after == 60

    @pytest.mark.asyncio
    async def test_fail_open_admits(self, broken_store, clock):
        limiter = RateLimiter(
            broken_store, max_requests=3, window_seconds=60, fail_closed=False, clock=clock
        )
        result = await limiter.admit("ip:10.0.0.5")

        assert result.allowed is True
        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_persistent_contention_is_a_store_failure(self, clock):
        """A store whose updates never apply is treated as unavailable."""
        store = AsyncMock()
        store.get.return_value = None
        store.compare_and_update.return_value = False
        limiter = RateLimiter(store, max_requests=3, window_seconds=60, clock=clock)

        result = await limiter.admit("ip:10.0.0.5")

        assert result.allowed is False
        assert result.degraded is True
        assert store.compare_and_update.await_count == RateLimiter.MAX_UPDATE_ATTEMPTS


class TestRateLimiterMaintenance:
    """Tests for get_status(), clear() and sweep()."""

    @pytest.fixture
    def limiter(self, store, clock):
        return RateLimiter(store, max_requests=3, window_seconds=60, clock=clock)

    @pytest.mark.asyncio
    async def test_status_of_unknown_identity(self, limiter):
        status = await limiter.get_status("ip:0.0.0.0")
        assert status.requests == 0
        assert status.remaining == 3
        assert status.blocked is False

    @pytest.mark.asyncio
    async def test_status_does_not_record_a_request(self, limiter):
        await limiter.admit("k")
        await limiter.get_status("k")
        status = await limiter.get_status("k")
        assert status.requests == 1
        assert status.remaining == 2

    @pytest.mark.asyncio
    async def test_clear_unblocks(self, limiter):
        for _ in range(4):
            await limiter.admit("k")
        await limiter.clear("k")
        result = await limiter.admit("k")
        assert result.allowed is True

    @pytest.mark.asyncio
    async def test_sweep_removes_idle_windows(self, limiter, store, clock):
        await limiter.admit("idle")
        clock.advance(61)
        await limiter.admit("active")

        removed = await limiter.sweep()

        assert removed == 1
        assert await store.get("ratelimit:idle") is None
        assert await store.get("ratelimit:active") is not None

    @pytest.mark.asyncio
    async def test_sweep_keeps_active_blocks(self, limiter, store, clock):
        for _ in range(4):
            await limiter.admit("blocked")
        clock.advance(30)

        assert await limiter.sweep() == 0
        assert (await limiter.get_status("blocked")).blocked is True

    @pytest.mark.asyncio
    async def test_sweep_removes_lapsed_blocks(self, limiter, store, clock):
        for _ in range(4):
            await limiter.admit("blocked")
        clock.advance(61)

        assert await limiter.sweep() == 1
        assert await store.get("ratelimit:blocked") is None

    @pytest.mark.asyncio
    async def test_sweep_prunes_partially_stale_window(self, limiter, store, clock):
        await limiter.admit("k")
        clock.advance(40)
        await limiter.admit("k")
        clock.advance(30)

        assert await limiter.sweep() == 0
        window = RateWindow.from_dict(await store.get("ratelimit:k"))
        assert len(window.timestamps) == 1

    @pytest.mark.asyncio
    async def test_sweep_leaves_concurrently_updated_window(self, limiter, store, clock):
        """A window changed after the sweep observed it is not deleted."""
        await limiter.admit("k")
        clock.advance(61)

        original_get = store.get

        async def get_then_race(key):
            observed = await original_get(key)
            # A request lands between the sweep's read and its update
            await store.set(key, {"timestamps": [clock()], "blocked": False, "block_expiry": 0.0})
            return observed

        with patch.object(store, "get", side_effect=get_then_race):
            removed = await limiter.sweep()

        assert removed == 0
        assert await store.get("ratelimit:k") is not None


class TestRateLimitResult:
    """Tests for response header rendering."""

    def test_admitted_headers(self):
        result = RateLimitResult(allowed=True, limit=100, remaining=42, reset_at=1700000060)
        assert result.headers() == {
            "X-RateLimit-Limit": "100",
            "X-RateLimit-Remaining": "42",
            "X-RateLimit-Reset": "1700000060",
        }

    def test_rejected_headers_include_retry_after(self):
        result = RateLimitResult(
            allowed=False, limit=100, remaining=0, reset_at=1700000060, retry_after=60
        )
        assert result.headers()["Retry-After"] == "60"
