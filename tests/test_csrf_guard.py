"""Tests for CSRF token issuing and validation."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from reqshield.app.exceptions import StoreUnavailableError, TokenCollisionError
from reqshield.app.services.csrf import (
    CsrfFailure,
    CsrfGuard,
    CsrfToken,
    extract_token,
)


class TestCsrfIssue:
    """Tests for token issuing."""

    @pytest.fixture
    def guard(self, store, clock):
        return CsrfGuard(store, ttl_seconds=3600, clock=clock)

    @pytest.mark.asyncio
    async def test_token_is_high_entropy_hex(self, guard):
        token = await guard.issue()
        assert len(token) == 64
        int(token, 16)

    @pytest.mark.asyncio
    async def test_tokens_are_unique(self, guard):
        tokens = {await guard.issue() for _ in range(50)}
        assert len(tokens) == 50

    @pytest.mark.asyncio
    async def test_token_record_is_stored(self, guard, store, clock):
        token = await guard.issue("sess-1")
        record = CsrfToken.from_dict(await store.get(f"csrf:token:{token}"))

        assert record.session_id == "sess-1"
        assert record.created_at == clock()
        assert record.expires_at == clock() + 3600
        assert record.consumed is False

    @pytest.mark.asyncio
    async def test_collision_raises(self, guard):
        with patch.object(guard, "_generate_token", return_value="deadbeef"):
            await guard.issue()
            with pytest.raises(TokenCollisionError):
                await guard.issue()


class TestCsrfValidate:
    """Tests for token validation."""

    @pytest.fixture
    def guard(self, store, clock):
        return CsrfGuard(store, ttl_seconds=3600, clock=clock)

    @pytest.mark.asyncio
    @pytest.mark.parametrize("method", ["GET", "HEAD", "OPTIONS", "TRACE", "get"])
    async def test_safe_methods_always_valid(self, guard, method):
        result = await guard.validate(None, method=method)
        assert result.valid is True

    @pytest.mark.asyncio
    async def test_missing_token(self, guard):
        result = await guard.validate(None, method="POST")
        assert result.valid is False
        assert result.reason == CsrfFailure.MISSING

    @pytest.mark.asyncio
    async def test_unknown_token(self, guard):
        result = await guard.validate("not-a-real-token", method="POST")
        assert result.reason == CsrfFailure.NOT_FOUND

    @pytest.mark.asyncio
    async def test_valid_token_is_reusable_by_default(self, guard):
        token = await guard.issue()
        assert (await guard.validate(token, method="POST")).valid is True
        assert (await guard.validate(token, method="PUT")).valid is True

    @pytest.mark.asyncio
    async def test_expired_token_is_purged(self, guard, store, clock):
        token = await guard.issue()
        clock.advance(3601)

        result = await guard.validate(token, method="POST")

        assert result.reason == CsrfFailure.EXPIRED
        assert await store.get(f"csrf:token:{token}") is None
        assert (await guard.validate(token, method="POST")).reason == CsrfFailure.NOT_FOUND

    @pytest.mark.asyncio
    async def test_token_valid_until_expiry_instant(self, guard, clock):
        token = await guard.issue()
        clock.advance(3600)
        assert (await guard.validate(token, method="POST")).valid is True

    @pytest.mark.asyncio
    async def test_session_mismatch(self, guard):
        token = await guard.issue("sess-a")

        assert (await guard.validate(token, "sess-b", "POST")).reason == CsrfFailure.SESSION_MISMATCH
        assert (await guard.validate(token, None, "POST")).reason == CsrfFailure.SESSION_MISMATCH
        assert (await guard.validate(token, "sess-a", "POST")).valid is True

    @pytest.mark.asyncio
    async def test_unbound_token_accepts_any_session(self, guard):
        token = await guard.issue()
        assert (await guard.validate(token, "sess-a", "POST")).valid is True

    @pytest.mark.asyncio
    async def test_rejection_logs_event(self, guard):
        with patch("reqshield.app.services.csrf.guard.log_security_event") as log_event:
            await guard.validate(None, method="DELETE")

        assert log_event.call_args.args[2] == "SECURITY_CSRF_MISSING"
        assert log_event.call_args.kwargs["reason"] == "missing"


class TestCsrfOneTimeUse:
    """Tests for one-time-use tokens."""

    @pytest.fixture
    def guard(self, store, clock):
        return CsrfGuard(store, ttl_seconds=3600, one_time_use=True, clock=clock)

    @pytest.mark.asyncio
    async def test_second_use_is_rejected(self, guard):
        token = await guard.issue("sess")

        assert (await guard.validate(token, "sess", "POST")).valid is True
        second = await guard.validate(token, "sess", "POST")
        assert second.valid is False
        assert second.reason == CsrfFailure.ALREADY_USED

    @pytest.mark.asyncio
    async def test_concurrent_validations_succeed_once(self, guard):
        token = await guard.issue("sess")

        results = await asyncio.gather(
            *(guard.validate(token, "sess", "POST") for _ in range(10))
        )

        assert sum(1 for r in results if r.valid) == 1
        assert all(r.reason == CsrfFailure.ALREADY_USED for r in results if not r.valid)

    @pytest.mark.asyncio
    async def test_consume_retries_after_lost_race(self, guard, store):
        """A conflicting update is re-evaluated rather than trusted."""
        token = await guard.issue("sess")
        key = f"csrf:token:{token}"
        original_get = store.get
        raced = False

        async def get_then_consume(k):
            nonlocal raced
            observed = await original_get(k)
            if not raced:
                raced = True
                consumed = dict(observed, consumed=True)
                await store.set(k, consumed)
            return observed

        with patch.object(store, "get", side_effect=get_then_consume):
            result = await guard.validate(token, "sess", "POST")

        assert result.reason == CsrfFailure.ALREADY_USED
        assert (await store.get(key))["consumed"] is True

    @pytest.mark.asyncio
    async def test_safe_method_does_not_consume(self, guard):
        token = await guard.issue()
        await guard.validate(token, method="GET")
        assert (await guard.validate(token, method="POST")).valid is True


class TestCsrfStoreFailure:
    """Tests for the fail-open/fail-closed policy."""

    @pytest.fixture
    def broken_store(self):
        store = AsyncMock()
        store.get.side_effect = StoreUnavailableError()
        return store

    @pytest.mark.asyncio
    async def test_fail_closed(self, broken_store, clock):
        guard = CsrfGuard(broken_store, clock=clock)
        result = await guard.validate("token", "sess", "POST")

        assert result.valid is False
        assert result.reason == CsrfFailure.STORE_UNAVAILABLE
        assert result.degraded is True

    @pytest.mark.asyncio
    async def test_fail_open(self, broken_store, clock):
        guard = CsrfGuard(broken_store, fail_closed=False, clock=clock)
        result = await guard.validate("token", "sess", "POST")

        assert result.valid is True
        assert result.degraded is True


class TestCsrfInvalidation:
    """Tests for invalidation, rotation and sweeping."""

    @pytest.fixture
    def guard(self, store, clock):
        return CsrfGuard(store, ttl_seconds=3600, clock=clock)

    @pytest.mark.asyncio
    async def test_invalidate(self, guard):
        token = await guard.issue()
        await guard.invalidate(token)
        assert (await guard.validate(token, method="POST")).reason == CsrfFailure.NOT_FOUND

    @pytest.mark.asyncio
    async def test_invalidate_all_for_session(self, guard):
        mine = [await guard.issue("sess-a") for _ in range(3)]
        theirs = await guard.issue("sess-b")

        removed = await guard.invalidate_all_for_session("sess-a")

        assert removed == 3
        for token in mine:
            assert (await guard.validate(token, "sess-a", "POST")).reason == CsrfFailure.NOT_FOUND
        assert (await guard.validate(theirs, "sess-b", "POST")).valid is True

    @pytest.mark.asyncio
    async def test_rotate(self, guard):
        old = await guard.issue("sess")
        new = await guard.rotate("sess")

        assert new != old
        assert (await guard.validate(old, "sess", "POST")).reason == CsrfFailure.NOT_FOUND
        assert (await guard.validate(new, "sess", "POST")).valid is True

    @pytest.mark.asyncio
    async def test_sweep_removes_only_expired(self, guard, store, clock):
        stale = await guard.issue()
        clock.advance(3000)
        fresh = await guard.issue()
        clock.advance(700)

        removed = await guard.sweep()

        assert removed == 1
        assert await store.get(f"csrf:token:{stale}") is None
        assert await store.get(f"csrf:token:{fresh}") is not None


class TestExtractToken:
    """Tests for token lookup precedence."""

    def test_header_wins(self):
        token = extract_token(
            {"x-csrf-token": "from-header"},
            body={"_csrf": "from-body"},
            query={"_csrf": "from-query"},
        )
        assert token == "from-header"

    def test_body_before_query(self):
        token = extract_token({}, body={"_csrf": "from-body"}, query={"_csrf": "from-query"})
        assert token == "from-body"

    def test_query_fallback(self):
        assert extract_token({}, body=None, query={"_csrf": "from-query"}) == "from-query"

    def test_nothing_presented(self):
        assert extract_token({}, body=["not", "a", "dict"], query={}) is None

    def test_custom_names(self):
        token = extract_token(
            {"x-xsrf": "abc"}, header_name="X-XSRF", field_name="token"
        )
        assert token == "abc"
