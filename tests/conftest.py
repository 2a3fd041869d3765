"""Shared test fixtures for the macro_api resilience core."""

import fnmatch
from typing import Any

import pytest
import pytest_asyncio
from loguru import logger
from redis.exceptions import ConnectionError as RedisConnectionError

from macro_api.services.cache_providers import MemoryCacheProvider
from macro_api.services.errors import ErrorHandler
from macro_api.services.retry import RetryConfig, RetryManager


# ============================================================================
# Redis test double
# ============================================================================


class FakeRedis:
    """In-memory stand-in for redis.asyncio.Redis covering the calls we use."""

    def __init__(self):
        self.store: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.down = False
        self.calls: list[str] = []
        self.closed = False

    def _check(self, op: str) -> None:
        self.calls.append(op)
        if self.down:
            raise RedisConnectionError("Connection refused")

    async def ping(self) -> bool:
        self._check("ping")
        return True

    async def get(self, key: str) -> str | None:
        self._check("get")
        return self.store.get(key)

    async def setex(self, key: str, seconds: int, value: str) -> bool:
        self._check("setex")
        self.store[key] = value
        self.ttls[key] = seconds
        return True

    async def delete(self, *keys: str) -> int:
        self._check("delete")
        removed = 0
        for key in keys:
            if self.store.pop(key, None) is not None:
                removed += 1
        return removed

    async def exists(self, key: str) -> int:
        self._check("exists")
        return 1 if key in self.store else 0

    async def scan(self, cursor: int = 0, match: str | None = None, count: int | None = None):
        self._check("scan")
        keys = [k for k in self.store if match is None or fnmatch.fnmatch(k, match)]
        return 0, keys

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def fake_redis() -> FakeRedis:
    """Create a fresh Redis test double."""
    return FakeRedis()


# ============================================================================
# Cache Fixtures
# ============================================================================


@pytest_asyncio.fixture
async def memory_provider():
    """Create a small memory provider and close it after the test."""
    provider = MemoryCacheProvider(max_size=3, default_ttl=60)
    yield provider
    await provider.close()


# ============================================================================
# Error / Retry Fixtures
# ============================================================================


@pytest.fixture
def error_handler() -> ErrorHandler:
    """Create an isolated error handler."""
    return ErrorHandler()


@pytest.fixture
def fast_retry(error_handler) -> RetryManager:
    """Retry manager with tiny delays so tests stay fast."""
    return RetryManager(
        RetryConfig(max_retries=3, base_delay=0.001, max_delay=0.01),
        error_handler,
    )


# ============================================================================
# Logging Fixtures
# ============================================================================


@pytest.fixture
def log_records():
    """Capture loguru records emitted during the test."""
    records: list[dict[str, Any]] = []
    sink_id = logger.add(lambda message: records.append(message.record), level="DEBUG")
    yield records
    logger.remove(sink_id)


class FakeHttpFailure(Exception):
    """Failure shaped like an HTTP client error with a response payload."""

    def __init__(self, message: str, status: int | None = None, data: Any = None, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.code = code
        self.response = {"status": status, "data": data} if status is not None else None


@pytest.fixture
def http_failure():
    """Factory for transport-shaped failures."""
    return FakeHttpFailure
