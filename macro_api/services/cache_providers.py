"""
Cache providers behind CacheManager.

- MemoryCacheProvider: bounded in-process map, LRU eviction, periodic expiry sweep
- RedisCacheProvider: redis.asyncio store, keys namespaced under a prefix
- HybridCacheProvider: memory L1 in front of a remote L2
"""

import asyncio
import contextlib
import json
import math
from abc import ABC, abstractmethod
from collections import OrderedDict
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any

import redis.asyncio as redis
from loguru import logger
from redis.exceptions import RedisError

from macro_api.services.cache import (
    CacheEntry,
    CacheStats,
    RemoteCacheConfig,
    to_timedelta,
)
from macro_api.services.errors import CacheError, ConfigurationError

DEFAULT_TTL = timedelta(hours=1)

# Failures of the remote store that are degraded or reported as CacheError
REMOTE_ERRORS = (RedisError, OSError)


class CacheProvider(ABC):
    """Uniform contract shared by every cache backend."""

    @abstractmethod
    async def get(self, key: str) -> Any | None: ...

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | timedelta | None = None) -> None: ...

    @abstractmethod
    async def delete(self, key: str) -> bool: ...

    @abstractmethod
    async def clear(self) -> None: ...

    @abstractmethod
    async def has(self, key: str) -> bool: ...

    @abstractmethod
    async def get_stats(self) -> CacheStats: ...

    @abstractmethod
    async def close(self) -> None: ...


class MemoryCacheProvider(CacheProvider):
    """
    In-process cache with LRU eviction.

    Entries live in a plain dict; a parallel OrderedDict of key -> last access
    time keeps LRU order (least recent first). Expired entries are dropped on
    access and by a background sweep that starts on first use inside a
    running event loop.
    """

    def __init__(
        self,
        max_size: int = 1000,
        default_ttl: float | timedelta = DEFAULT_TTL,
        cleanup_interval: float | timedelta = timedelta(minutes=5),
        debug: bool = False,
    ):
        if max_size < 1:
            raise ConfigurationError(f"max_size must be positive, got {max_size}")

        self._max_size = max_size
        self._default_ttl = to_timedelta(default_ttl, DEFAULT_TTL)
        self._cleanup_interval = to_timedelta(cleanup_interval, timedelta(minutes=5))
        self._debug = debug

        self._entries: dict[str, CacheEntry[Any]] = {}
        self._access_order: OrderedDict[str, datetime] = OrderedDict()
        self._stats = CacheStats()
        self._lock = asyncio.Lock()
        self._cleanup_task: asyncio.Task[None] | None = None
        self._closed = False

    @property
    def default_ttl(self) -> timedelta:
        return self._default_ttl

    async def get(self, key: str) -> Any | None:
        self._ensure_cleanup_task()
        async with self._lock:
            entry = self._entries.get(key)

            if entry is None:
                self._stats.misses += 1
                self._log(f"MISS: {key}")
                return None

            if entry.is_expired():
                self._remove(key)
                self._stats.misses += 1
                self._log(f"EXPIRED: {key}")
                return None

            self._touch(key)
            entry.hits += 1
            self._stats.hits += 1
            self._log(f"HIT: {key}")
            return entry.value

    async def set(self, key: str, value: Any, ttl: float | timedelta | None = None) -> None:
        self._ensure_cleanup_task()
        entry = CacheEntry(
            value=value,
            timestamp=datetime.now(),
            ttl=to_timedelta(ttl, self._default_ttl),
        )

        async with self._lock:
            if key not in self._entries and len(self._entries) >= self._max_size:
                self._evict_lru()

            self._entries[key] = entry
            self._touch(key)
            self._stats.sets += 1
            self._log(f"SET: {key} (TTL: {entry.ttl.total_seconds()}s)")

    async def delete(self, key: str) -> bool:
        async with self._lock:
            if key not in self._entries:
                return False
            self._remove(key)
            self._stats.deletes += 1
            self._log(f"DELETE: {key}")
            return True

    async def clear(self) -> None:
        async with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._access_order.clear()
            self._log(f"CLEAR: {count} entries removed")

    async def has(self, key: str) -> bool:
        async with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                return False
            if entry.is_expired():
                self._remove(key)
                return False
            return True

    async def get_stats(self) -> CacheStats:
        return replace(self._stats, size=len(self._entries))

    async def cleanup_expired(self) -> int:
        """Remove all expired entries. Returns count of removed entries."""
        async with self._lock:
            now = datetime.now()
            expired_keys = [k for k, v in self._entries.items() if v.is_expired(now)]
            for key in expired_keys:
                self._remove(key)

            if expired_keys:
                self._log(f"CLEANUP: {len(expired_keys)} expired entries removed")

            return len(expired_keys)

    async def close(self) -> None:
        self._closed = True
        task, self._cleanup_task = self._cleanup_task, None
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        async with self._lock:
            self._entries.clear()
            self._access_order.clear()

    def _ensure_cleanup_task(self) -> None:
        if self._closed or self._cleanup_task is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._cleanup_task = loop.create_task(self._cleanup_loop())

    async def _cleanup_loop(self) -> None:
        interval = self._cleanup_interval.total_seconds()
        while True:
            await asyncio.sleep(interval)
            await self.cleanup_expired()

    def _touch(self, key: str) -> None:
        self._access_order[key] = datetime.now()
        self._access_order.move_to_end(key)

    def _remove(self, key: str) -> None:
        self._entries.pop(key, None)
        self._access_order.pop(key, None)

    def _evict_lru(self) -> None:
        """Evict the least recently accessed entry."""
        if not self._access_order:
            return
        oldest_key, _ = self._access_order.popitem(last=False)
        self._entries.pop(oldest_key, None)
        self._stats.evictions += 1
        self._log(f"EVICT: {oldest_key}")

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[MemoryCache] {message}")


class RedisCacheProvider(CacheProvider):
    """
    Redis-backed cache.

    Values are JSON-encoded and stored under "{key_prefix}:{key}". Reads
    degrade to a miss while Redis is unreachable; writes, deletes and clears
    raise CacheError so callers know the remote state was not changed.
    """

    def __init__(
        self,
        config: RemoteCacheConfig,
        default_ttl: float | timedelta = DEFAULT_TTL,
        client: redis.Redis | None = None,
        debug: bool = False,
    ):
        self._config = config
        self._default_ttl = to_timedelta(default_ttl, DEFAULT_TTL)
        self._client = client
        self._debug = debug
        self._connect_lock = asyncio.Lock()
        self._stats = CacheStats()

    async def _get_client(self) -> redis.Redis:
        """Get or create the Redis connection."""
        if self._client is not None:
            return self._client

        async with self._connect_lock:
            if self._client is None:
                client = redis.from_url(
                    self._config.url,
                    password=self._config.password,
                    db=self._config.db,
                    encoding="utf-8",
                    decode_responses=True,
                )
                try:
                    await client.ping()
                except REMOTE_ERRORS:
                    await client.aclose()
                    raise
                self._client = client
                logger.info(f"Connected to remote cache at {self._config.url}")
        return self._client

    def _full_key(self, key: str) -> str:
        return f"{self._config.key_prefix}:{key}"

    async def get(self, key: str) -> Any | None:
        try:
            client = await self._get_client()
            raw = await client.get(self._full_key(key))
            value = json.loads(raw) if raw is not None else None
        except (*REMOTE_ERRORS, ValueError) as e:
            logger.warning(f"Remote cache GET failed for {key}, treating as miss: {e}")
            self._stats.misses += 1
            return None

        if value is None:
            self._stats.misses += 1
            self._log(f"MISS: {key}")
            return None

        self._stats.hits += 1
        self._log(f"HIT: {key}")
        return value

    async def set(self, key: str, value: Any, ttl: float | timedelta | None = None) -> None:
        seconds = max(1, math.ceil(to_timedelta(ttl, self._default_ttl).total_seconds()))
        try:
            payload = json.dumps(value)
            client = await self._get_client()
            await client.setex(self._full_key(key), seconds, payload)
        except (*REMOTE_ERRORS, TypeError, ValueError) as e:
            raise CacheError(f"Remote cache SET failed for {key}: {e}") from e

        self._stats.sets += 1
        self._log(f"SET: {key} (TTL: {seconds}s)")

    async def delete(self, key: str) -> bool:
        try:
            client = await self._get_client()
            removed = await client.delete(self._full_key(key))
        except REMOTE_ERRORS as e:
            raise CacheError(f"Remote cache DELETE failed for {key}: {e}") from e

        if removed:
            self._stats.deletes += 1
            return True
        return False

    async def clear(self) -> None:
        """Remove every key under this provider's prefix."""
        pattern = self._full_key("*")
        removed = 0
        try:
            client = await self._get_client()
            cursor = 0
            while True:
                cursor, keys = await client.scan(cursor=cursor, match=pattern, count=500)
                if keys:
                    removed += await client.delete(*keys)
                if cursor == 0:
                    break
        except REMOTE_ERRORS as e:
            raise CacheError(f"Remote cache CLEAR failed: {e}") from e
        self._log(f"CLEAR: {removed} entries removed")

    async def has(self, key: str) -> bool:
        try:
            client = await self._get_client()
            return await client.exists(self._full_key(key)) > 0
        except REMOTE_ERRORS as e:
            logger.warning(f"Remote cache EXISTS failed for {key}: {e}")
            return False

    async def get_stats(self) -> CacheStats:
        # size is not tracked for the remote tier
        return replace(self._stats)

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
            logger.info("Disconnected from remote cache")

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[RedisCache] {message}")


class HybridCacheProvider(CacheProvider):
    """
    Two-tier cache: fast local L1 in front of a shared remote L2.

    Reads try L1 then L2, promoting L2 hits into L1. Writes go to both tiers
    concurrently; an L2 failure is logged and does not fail the write.
    """

    def __init__(self, l1: MemoryCacheProvider, l2: CacheProvider):
        self.l1 = l1
        self.l2 = l2

    async def get(self, key: str) -> Any | None:
        value = await self.l1.get(key)
        if value is not None:
            return value

        value = await self.l2.get(key)
        if value is not None:
            await self.l1.set(key, value)
        return value

    async def set(self, key: str, value: Any, ttl: float | timedelta | None = None) -> None:
        l1_result, l2_result = await asyncio.gather(
            self.l1.set(key, value, ttl),
            self.l2.set(key, value, ttl),
            return_exceptions=True,
        )
        if isinstance(l1_result, BaseException):
            raise l1_result
        if isinstance(l2_result, Exception):
            logger.warning(f"L2 cache write failed for {key}, kept in L1 only: {l2_result}")
        elif isinstance(l2_result, BaseException):
            raise l2_result

    async def delete(self, key: str) -> bool:
        l1_deleted = await self.l1.delete(key)
        try:
            l2_deleted = await self.l2.delete(key)
        except CacheError as e:
            logger.warning(f"L2 cache delete failed for {key}: {e}")
            l2_deleted = False
        return l1_deleted or l2_deleted

    async def clear(self) -> None:
        await self.l1.clear()
        try:
            await self.l2.clear()
        except CacheError as e:
            logger.warning(f"L2 cache clear failed: {e}")

    async def has(self, key: str) -> bool:
        if await self.l1.has(key):
            return True
        return await self.l2.has(key)

    async def get_stats(self) -> CacheStats:
        """
        Sum of both tiers' counters.

        A lookup answered by L2 counts as an L1 miss plus an L2 hit, so the
        combined hit_rate is per tier lookup, not per caller read.
        """
        return await self.l1.get_stats() + await self.l2.get_stats()

    async def close(self) -> None:
        await asyncio.gather(self.l1.close(), self.l2.close())
