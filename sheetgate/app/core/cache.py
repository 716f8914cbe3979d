"""Shared key-value store abstraction.

Provides a pluggable cache/counter backend with in-memory and Redis
implementations. Backends raise CacheUnavailableError when the store cannot
be reached; callers decide how to degrade.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
import asyncio
import time
from typing import Any

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from sheetgate.app.core.config import Settings
from sheetgate.app.core.logging import get_logger
from sheetgate.app.exceptions import CacheUnavailableError

logger = get_logger(__name__)


# INCR and PEXPIRE in one round trip so a counter never exists without expiry
INCR_WITH_EXPIRY_SCRIPT = """
    local count = redis.call('INCR', KEYS[1])
    if count == 1 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
    end
    local ttl = redis.call('PTTL', KEYS[1])
    if ttl < 0 then
        redis.call('PEXPIRE', KEYS[1], ARGV[1])
        ttl = tonumber(ARGV[1])
    end
    return {count, ttl}
"""

DECR_FLOOR_SCRIPT = """
    local current = tonumber(redis.call('GET', KEYS[1]) or '0')
    if current > 0 then
        return redis.call('DECR', KEYS[1])
    end
    return 0
"""


@dataclass
class _CacheEntry:
    """Internal cache entry with TTL tracking."""

    value: bytes
    expires_at: float | None = None

    def is_expired(self) -> bool:
        """Check if the entry has expired."""
        if self.expires_at is None:
            return False
        return time.time() > self.expires_at


class CacheBackend(ABC):
    """Abstract base class for shared store backends.

    All cache implementations must inherit from this class and implement
    the abstract methods.
    """

    name: str = "unknown"

    @property
    def available(self) -> bool:
        """Whether the backend is believed to be reachable right now."""
        return True

    @abstractmethod
    async def get(self, key: str) -> bytes | None:
        """Retrieve a value from the cache.

        Returns:
            The cached value as bytes, or None if not found or expired.
        """

    @abstractmethod
    async def set(self, key: str, value: bytes, ttl: int) -> None:
        """Store a value with a time-to-live in seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove a value. Deleting a missing key is not an error."""

    @abstractmethod
    async def exists(self, key: str) -> bool:
        """Check if a key exists and is not expired."""

    @abstractmethod
    async def clear(self) -> None:
        """Clear all entries from the cache."""

    @abstractmethod
    async def incr(self, key: str, window_ms: int) -> tuple[int, int]:
        """Atomically increment a counter, setting its expiry on creation.

        Args:
            key: Counter key.
            window_ms: Expiry applied when the counter is created.

        Returns:
            Tuple of (count after increment, remaining ttl in milliseconds).
        """

    @abstractmethod
    async def decr(self, key: str) -> int:
        """Decrement a counter without letting it drop below zero."""

    @abstractmethod
    async def ping(self) -> bool:
        """Check connectivity. Never raises."""

    async def close(self) -> None:
        """Release connections held by the backend."""


class InMemoryCache(CacheBackend):
    """In-memory cache implementation with TTL support.

    Stores all data in a Python dictionary and expires entries lazily.

    Note: This cache is not shared between processes. Use it for
    single-instance deployments and tests only.
    """

    name = "memory"

    def __init__(self) -> None:
        self._data: dict[str, _CacheEntry] = {}
        self._lock = asyncio.Lock()

    def _live_entry(self, key: str) -> _CacheEntry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.is_expired():
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> bytes | None:
        async with self._lock:
            entry = self._live_entry(key)
            return entry.value if entry is not None else None

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        async with self._lock:
            expires_at = time.time() + ttl if ttl > 0 else None
            self._data[key] = _CacheEntry(value=value, expires_at=expires_at)

    async def delete(self, key: str) -> None:
        async with self._lock:
            self._data.pop(key, None)

    async def exists(self, key: str) -> bool:
        async with self._lock:
            return self._live_entry(key) is not None

    async def clear(self) -> None:
        async with self._lock:
            self._data.clear()

    async def incr(self, key: str, window_ms: int) -> tuple[int, int]:
        async with self._lock:
            now = time.time()
            entry = self._live_entry(key)
            if entry is None:
                entry = _CacheEntry(value=b"0", expires_at=now + window_ms / 1000)
                self._data[key] = entry
            count = int(entry.value) + 1
            entry.value = str(count).encode()
            ttl_ms = int(max(0.0, (entry.expires_at or now) - now) * 1000)
            return count, ttl_ms

    async def decr(self, key: str) -> int:
        async with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return 0
            count = max(0, int(entry.value) - 1)
            entry.value = str(count).encode()
            return count

    async def ping(self) -> bool:
        return True

    async def cleanup_expired(self) -> int:
        """Remove all expired entries from the cache.

        Returns:
            Number of entries removed.
        """
        async with self._lock:
            expired_keys = [
                key for key, entry in self._data.items() if entry.is_expired()
            ]
            for key in expired_keys:
                del self._data[key]
            return len(expired_keys)


class RedisCache(CacheBackend):
    """Redis-based shared store shared by every server process.

    Any Redis error marks the backend down for ``retry_interval`` seconds
    and is re-raised as CacheUnavailableError. While down, ``available`` is
    False so callers can skip the network round trip entirely.

    Example:
        >>> cache = RedisCache("redis://localhost:6379/0")
        >>> await cache.set("key", b"value", ttl=300)
    """

    name = "redis"

    def __init__(
        self,
        redis_url: str = "",
        client: Any | None = None,
        retry_interval: float = 5.0,
        socket_timeout: float = 2.0,
    ) -> None:
        self._redis_url = redis_url
        self._redis = client
        self._retry_interval = retry_interval
        self._socket_timeout = socket_timeout
        self._down_since: float | None = None

    def _get_client(self) -> Any:
        if self._redis is None:
            self._redis = aioredis.from_url(
                self._redis_url,
                socket_timeout=self._socket_timeout,
                socket_connect_timeout=self._socket_timeout,
            )
        return self._redis

    @property
    def available(self) -> bool:
        if self._down_since is None:
            return True
        return time.monotonic() - self._down_since >= self._retry_interval

    def _mark_down(self, operation: str, error: Exception) -> None:
        if self._down_since is None:
            logger.error(f"Redis became unavailable during {operation}: {error}")
        self._down_since = time.monotonic()

    def _mark_up(self) -> None:
        if self._down_since is not None:
            logger.info("Redis connection restored")
        self._down_since = None

    async def _call(self, operation: str, *args: Any) -> Any:
        client = self._get_client()
        try:
            result = await getattr(client, operation)(*args)
        except (RedisError, OSError) as e:
            self._mark_down(operation, e)
            raise CacheUnavailableError(operation, str(e)) from e
        self._mark_up()
        return result

    async def get(self, key: str) -> bytes | None:
        return await self._call("get", key)

    async def set(self, key: str, value: bytes, ttl: int) -> None:
        await self._call("setex", key, ttl, value)

    async def delete(self, key: str) -> None:
        await self._call("delete", key)

    async def exists(self, key: str) -> bool:
        return await self._call("exists", key) > 0

    async def clear(self) -> None:
        """Clear all entries.

        WARNING: This uses FLUSHDB which clears the entire Redis database.
        """
        await self._call("flushdb")

    async def incr(self, key: str, window_ms: int) -> tuple[int, int]:
        count, ttl = await self._call("eval", INCR_WITH_EXPIRY_SCRIPT, 1, key, window_ms)
        return int(count), int(ttl)

    async def decr(self, key: str) -> int:
        return int(await self._call("eval", DECR_FLOOR_SCRIPT, 1, key))

    async def ping(self) -> bool:
        try:
            await self._call("ping")
        except CacheUnavailableError:
            return False
        return True

    async def close(self) -> None:
        """Close the Redis connection."""
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None


def build_cache_backend(config: Settings) -> CacheBackend | None:
    """Create the shared store backend selected by configuration.

    Returns:
        A CacheBackend, or None when no shared store is configured. Callers
        treat None exactly like a permanently unreachable store.
    """
    backend = config.resolved_cache_backend
    if backend == "redis":
        if not config.redis_url:
            logger.warning("cache_backend=redis but REDIS_URL is empty; running without shared cache")
            return None
        logger.info("Using Redis shared store")
        return RedisCache(
            config.redis_url,
            retry_interval=config.cache_retry_interval_seconds,
            socket_timeout=config.redis_socket_timeout,
        )
    if backend == "memory":
        logger.info("Using in-process cache (single instance only)")
        return InMemoryCache()
    logger.info("No shared store configured; cache disabled and rate limits are per-process")
    return None
