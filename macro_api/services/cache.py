"""
CacheManager - Async cache facade with pluggable providers.

Features:
- Memory provider with LRU eviction and a background expiry sweep
- Redis provider with namespaced keys
- Hybrid provider (memory L1 in front of Redis L2)
- Deterministic cache keys from (service, method, params)
- cached / memoize / warm_up helpers
"""

import asyncio
import functools
import hashlib
import json
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import (
    TYPE_CHECKING,
    Any,
    Awaitable,
    Callable,
    Generic,
    Iterable,
    Mapping,
    TypeVar,
)

from loguru import logger

from macro_api.services.errors import ConfigurationError

if TYPE_CHECKING:
    from macro_api.services.cache_providers import CacheProvider

T = TypeVar("T")

KEY_NAMESPACE = "macro_api"


def to_timedelta(value: float | timedelta | None, default: timedelta) -> timedelta:
    """Normalise a TTL given in seconds or as a timedelta."""
    if value is None:
        return default
    if isinstance(value, timedelta):
        return value
    return timedelta(seconds=value)


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with metadata."""

    value: T
    timestamp: datetime
    ttl: timedelta
    hits: int = 0

    @property
    def expires_at(self) -> datetime:
        return self.timestamp + self.ttl

    def is_expired(self, now: datetime | None = None) -> bool:
        """Check if entry is past its TTL."""
        return (now or datetime.now()) - self.timestamp > self.ttl


@dataclass
class CacheStats:
    """Cache statistics."""

    hits: int = 0
    misses: int = 0
    sets: int = 0
    deletes: int = 0
    evictions: int = 0
    size: int = 0

    @property
    def hit_rate(self) -> float:
        """Calculate cache hit rate."""
        total = self.hits + self.misses
        if total == 0:
            return 0.0
        return self.hits / total

    def __add__(self, other: "CacheStats") -> "CacheStats":
        return CacheStats(
            hits=self.hits + other.hits,
            misses=self.misses + other.misses,
            sets=self.sets + other.sets,
            deletes=self.deletes + other.deletes,
            evictions=self.evictions + other.evictions,
            size=self.size + other.size,
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "hits": self.hits,
            "misses": self.misses,
            "sets": self.sets,
            "deletes": self.deletes,
            "evictions": self.evictions,
            "size": self.size,
            "hit_rate": f"{self.hit_rate:.2%}",
        }


class CacheType(str, Enum):
    """Available cache providers."""

    MEMORY = "memory"
    REMOTE = "remote"
    HYBRID = "hybrid"


@dataclass(frozen=True)
class RemoteCacheConfig:
    """Connection descriptor for the remote (Redis) tier."""

    url: str = "redis://localhost:6379/0"
    key_prefix: str = KEY_NAMESPACE
    password: str | None = None
    db: int | None = None


@dataclass(frozen=True)
class CacheConfig:
    """Configuration for CacheManager."""

    type: CacheType | str = CacheType.MEMORY
    ttl: float | timedelta = timedelta(hours=1)
    max_size: int = 1000
    remote: RemoteCacheConfig | None = None
    cleanup_interval: timedelta = timedelta(minutes=5)


class CacheManager:
    """
    Cache facade that selects a provider from configuration.

    Usage:
        cache = CacheManager(CacheConfig(type="memory", max_size=100))

        key = cache.generate_key("github", "get_user", {"username": "octocat"})
        user = await cache.cached(key, lambda: github.get_user("octocat"))
    """

    def __init__(
        self,
        config: CacheConfig | None = None,
        provider: "CacheProvider | None" = None,
        debug: bool = False,
    ):
        self.config = config or CacheConfig()
        self._debug = debug
        self._provider = provider or self._create_provider(self.config)

    def _create_provider(self, config: CacheConfig) -> "CacheProvider":
        from macro_api.services.cache_providers import (
            HybridCacheProvider,
            MemoryCacheProvider,
            RedisCacheProvider,
        )

        try:
            cache_type = CacheType(config.type)
        except ValueError as e:
            raise ConfigurationError(f"Unsupported cache type: {config.type}") from e

        ttl = to_timedelta(config.ttl, timedelta(hours=1))

        if cache_type == CacheType.MEMORY:
            return MemoryCacheProvider(
                max_size=config.max_size,
                default_ttl=ttl,
                cleanup_interval=config.cleanup_interval,
                debug=self._debug,
            )

        if config.remote is None:
            raise ConfigurationError(
                f"Remote configuration is required for {cache_type.value} cache type"
            )

        remote = RedisCacheProvider(config.remote, default_ttl=ttl, debug=self._debug)
        if cache_type == CacheType.REMOTE:
            return remote

        return HybridCacheProvider(
            MemoryCacheProvider(
                max_size=config.max_size,
                default_ttl=ttl,
                cleanup_interval=config.cleanup_interval,
                debug=self._debug,
            ),
            remote,
        )

    @property
    def provider(self) -> "CacheProvider":
        return self._provider

    def generate_key(
        self, service: str, method: str, params: Mapping[str, Any] | None = None
    ) -> str:
        """
        Generate a deterministic cache key.

        Params are serialised with keys sorted at every level, so the same
        parameter set always yields the same key regardless of insertion order.
        """
        payload = json.dumps(
            params or {}, sort_keys=True, separators=(",", ":"), default=str
        )
        param_hash = hashlib.md5(payload.encode()).hexdigest()[:8]
        return f"{KEY_NAMESPACE}:{service}:{method}:{param_hash}"

    async def get(self, key: str) -> Any | None:
        return await self._provider.get(key)

    async def set(self, key: str, value: Any, ttl: float | timedelta | None = None) -> None:
        await self._provider.set(key, value, ttl)

    async def delete(self, key: str) -> bool:
        return await self._provider.delete(key)

    async def clear(self) -> None:
        await self._provider.clear()

    async def has(self, key: str) -> bool:
        return await self._provider.has(key)

    async def get_stats(self) -> CacheStats:
        return await self._provider.get_stats()

    async def close(self) -> None:
        await self._provider.close()

    async def cached(
        self,
        key: str,
        producer: Callable[[], Awaitable[T]],
        ttl: float | timedelta | None = None,
    ) -> T:
        """
        Return the cached value for key, or compute, store and return it.

        Not single-flight: concurrent misses on the same key may each call
        producer. None results are returned but not stored.
        """
        cached = await self.get(key)
        if cached is not None:
            self._log(f"HIT: {key}")
            return cached

        result = await producer()
        if result is not None:
            await self.set(key, result, ttl)
        return result

    def memoize(
        self,
        fn: Callable[..., Awaitable[T]],
        key_generator: Callable[..., str],
        ttl: float | timedelta | None = None,
    ) -> Callable[..., Awaitable[T]]:
        """Wrap an async function so its results are cached by key_generator(*args)."""

        @functools.wraps(fn)
        async def wrapper(*args, **kwargs) -> T:
            key = key_generator(*args, **kwargs)
            return await self.cached(key, lambda: fn(*args, **kwargs), ttl)

        return wrapper

    async def invalidate_pattern(self, pattern: str) -> int:
        """
        Invalidate cache entries by pattern.

        Patterns are not matched: any pattern containing '*' clears the whole
        cache and returns -1. A pattern without a wildcard is treated as an
        exact key and returns the number of entries deleted (0 or 1).
        """
        if "*" in pattern:
            await self.clear()
            self._log(f"INVALIDATE: '{pattern}' cleared the whole cache")
            return -1
        return 1 if await self.delete(pattern) else 0

    async def warm_up(self, entries: Iterable[Mapping[str, Any]]) -> int:
        """
        Populate the cache concurrently, best effort.

        Each entry is a mapping with 'key', 'value' and optional 'ttl'.
        Returns the number of entries written.
        """
        entries = list(entries)
        results = await asyncio.gather(
            *(self.set(e["key"], e["value"], e.get("ttl")) for e in entries),
            return_exceptions=True,
        )

        written = 0
        for entry, result in zip(entries, results):
            if isinstance(result, Exception):
                logger.warning(f"Cache warm-up failed for {entry['key']}: {result}")
            else:
                written += 1
        logger.debug(f"Cache warm-up wrote {written}/{len(entries)} entries")
        return written

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self._debug:
            logger.debug(f"[CacheManager] {message}")

