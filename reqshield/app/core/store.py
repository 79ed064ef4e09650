"""State store abstraction for rate-limit windows and CSRF tokens.

Provides a pluggable keyed store with in-memory and Redis implementations.
Values are JSON-compatible structures (dicts, lists, numbers, strings).
Atomic per-key updates go through compare_and_update, which both backends
implement as a single indivisible step.
"""

import copy
import json
import threading
import time
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Callable, Optional

import redis
import redis.asyncio as aioredis

from reqshield.app.core.logging import get_logger
from reqshield.app.exceptions import StoreUnavailableError

logger = get_logger(__name__)


@dataclass
class _StoreEntry:
    """Internal store entry with TTL tracking."""

    value: Any
    expires_at: float | None = None

    def is_expired(self, now: float) -> bool:
        if self.expires_at is None:
            return False
        return now >= self.expires_at


class StateStore(ABC):
    """Abstract base class for state stores.

    compare_and_update is the only primitive callers rely on for
    atomicity: ``expected=None`` means "the key must be absent" and
    ``new=None`` means "delete the key".
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the value stored under key, or None if absent or expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store value under key, expiring after ttl seconds if given."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove key. Deleting a missing key is not an error."""

    @abstractmethod
    async def compare_and_update(
        self,
        key: str,
        expected: Any | None,
        new: Any | None,
        ttl: float | None = None,
    ) -> bool:
        """Atomically replace the value of key if it still equals expected.

        Args:
            key: The key to update.
            expected: The value the caller last observed (None = absent).
            new: The replacement value (None = delete the key).
            ttl: Time-to-live in seconds for the new value.

        Returns:
            True if the update was applied, False if the current value
            differed from expected.
        """

    @abstractmethod
    async def keys(self, prefix: str) -> list[str]:
        """Return the live keys starting with prefix."""

    async def close(self) -> None:
        """Release backend resources."""


class InMemoryStore(StateStore):
    """In-memory store with TTL support.

    This is the default backend, suitable for single-process deployments.
    Values are deep-copied on the way in and out, so callers can never
    mutate stored state behind the store's back. The lock is only held
    for synchronous sections, which makes it safe across event loops.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._data: dict[str, _StoreEntry] = {}
        self._lock = threading.Lock()
        self._clock = clock

    def _live_entry(self, key: str) -> _StoreEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired(self._clock()):
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl: float | None) -> float | None:
        return self._clock() + ttl if ttl and ttl > 0 else None

    async def get(self, key: str) -> Any | None:
        with self._lock:
            entry = self._live_entry(key)
            return copy.deepcopy(entry.value) if entry else None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        with self._lock:
            self._data[key] = _StoreEntry(
                value=copy.deepcopy(value), expires_at=self._expiry(ttl)
            )

    async def delete(self, key: str) -> None:
        with self._lock:
            self._data.pop(key, None)

    async def compare_and_update(
        self,
        key: str,
        expected: Any | None,
        new: Any | None,
        ttl: float | None = None,
    ) -> bool:
        with self._lock:
            entry = self._live_entry(key)
            current = entry.value if entry else None
            if current != expected:
                return False
            if new is None:
                self._data.pop(key, None)
            else:
                self._data[key] = _StoreEntry(
                    value=copy.deepcopy(new), expires_at=self._expiry(ttl)
                )
            return True

    async def keys(self, prefix: str) -> list[str]:
        with self._lock:
            now = self._clock()
            expired = [k for k, e in self._data.items() if e.is_expired(now)]
            for key in expired:
                del self._data[key]
            return [k for k in self._data if k.startswith(prefix)]

    async def clear(self) -> None:
        """Remove every entry (testing helper)."""
        with self._lock:
            self._data.clear()

    def __len__(self) -> int:
        return len(self._data)


# Atomic compare-and-update. GET returns false for a missing key, so the
# "expected absent" branch is a plain truthiness check.
COMPARE_AND_UPDATE_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    if ARGV[1] == '1' then
        if current ~= ARGV[2] then
            return 0
        end
    elseif current then
        return 0
    end

    if ARGV[3] == '1' then
        local ttl_ms = tonumber(ARGV[5])
        if ttl_ms > 0 then
            redis.call('SET', KEYS[1], ARGV[4], 'PX', ttl_ms)
        else
            redis.call('SET', KEYS[1], ARGV[4])
        end
    else
        redis.call('DEL', KEYS[1])
    end
    return 1
"""


class RedisStore(StateStore):
    """Redis-based store for multi-instance deployments.

    Values are serialized as canonical JSON (sorted keys, compact
    separators) so that compare_and_update can compare the serialized
    form server-side inside a Lua script.

    Example:
        >>> store = RedisStore("redis://localhost:6379/0")
        >>> await store.set("csrf:token:abc", {"expires_at": 1.0}, ttl=3600)
    """

    def __init__(
        self,
        redis_url: str | None = None,
        client: Any | None = None,
        prefix: str = "reqshield:",
    ) -> None:
        self._redis_url = redis_url
        self._redis = client
        self._prefix = prefix

    async def _get_client(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    @staticmethod
    def _encode(value: Any) -> str:
        return json.dumps(value, sort_keys=True, separators=(",", ":"))

    @staticmethod
    def _ttl_ms(ttl: float | None) -> int:
        return int(ttl * 1000) if ttl and ttl > 0 else 0

    @asynccontextmanager
    async def _translate_errors(self, operation: str) -> AsyncIterator[None]:
        try:
            yield
        except redis.RedisError as e:
            logger.error(f"Redis {operation} failed: {e}")
            raise StoreUnavailableError(f"Redis {operation} failed") from e

    async def get(self, key: str) -> Any | None:
        async with self._translate_errors("get"):
            client = await self._get_client()
            raw = await client.get(self._key(key))
        return json.loads(raw) if raw is not None else None

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        async with self._translate_errors("set"):
            client = await self._get_client()
            ttl_ms = self._ttl_ms(ttl)
            if ttl_ms:
                await client.set(self._key(key), self._encode(value), px=ttl_ms)
            else:
                await client.set(self._key(key), self._encode(value))

    async def delete(self, key: str) -> None:
        async with self._translate_errors("delete"):
            client = await self._get_client()
            await client.delete(self._key(key))

    async def compare_and_update(
        self,
        key: str,
        expected: Any | None,
        new: Any | None,
        ttl: float | None = None,
    ) -> bool:
        async with self._translate_errors("compare_and_update"):
            client = await self._get_client()
            applied = await client.eval(
                COMPARE_AND_UPDATE_SCRIPT,
                1,
                self._key(key),
                "0" if expected is None else "1",
                "" if expected is None else self._encode(expected),
                "0" if new is None else "1",
                "" if new is None else self._encode(new),
                self._ttl_ms(ttl),
            )
        return int(applied) == 1

    async def keys(self, prefix: str) -> list[str]:
        async with self._translate_errors("scan"):
            client = await self._get_client()
            start = len(self._prefix)
            return [
                k[start:]
                async for k in client.scan_iter(match=f"{self._key(prefix)}*")
            ]

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def create_store(
    backend: Optional[str] = None,
    redis_url: Optional[str] = None,
    prefix: Optional[str] = None,
) -> StateStore:
    """Build the store selected by configuration.

    Args:
        backend: 'memory', 'redis', or None to follow settings.redis_enabled.
        redis_url: Redis connection URL. Defaults to settings.redis_url.
        prefix: Key prefix for the Redis backend.

    Returns:
        A new StateStore instance. The caller owns its lifetime.
    """
    from reqshield.app.core.config import settings

    use_redis = settings.redis_enabled if backend is None else backend == "redis"
    if use_redis:
        logger.info("Using Redis state store")
        return RedisStore(
            redis_url=redis_url or settings.redis_url,
            prefix=prefix if prefix is not None else settings.store_prefix,
        )

    logger.debug("Using in-memory state store")
    return InMemoryStore()
