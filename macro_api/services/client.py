"""
MacroAPIClient - Unified entry point used by every service wrapper.

Combines:
- CacheManager for result caching
- RetryManager for transient failure recovery
- CircuitBreakerRegistry for per-service failure protection (optional)
- HttpTransport for plain HTTP calls
"""

from dataclasses import dataclass, field
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Mapping, TypeVar

from loguru import logger

from macro_api.services.cache import CacheConfig, CacheManager, CacheStats
from macro_api.services.circuit_breaker import (
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
)
from macro_api.services.errors import (
    CacheError,
    CircuitOpenError,
    ErrorHandler,
    ErrorStat,
    get_error_handler,
)
from macro_api.services.retry import RetryConfig, RetryManager
from macro_api.services.transport import HttpTransport

if TYPE_CHECKING:
    from macro_api.settings import Settings

T = TypeVar("T")


@dataclass
class ClientConfig:
    """Configuration for MacroAPIClient. cache=None disables caching."""

    cache: CacheConfig | None = field(default_factory=CacheConfig)
    retries: RetryConfig = field(default_factory=RetryConfig)
    circuit_breaker: CircuitBreakerConfig | None = None
    debug: bool = False


class MacroAPIClient:
    """
    Runs service operations through cache, circuit breaker and retries.

    Usage:
        client = MacroAPIClient(ClientConfig(cache=CacheConfig(ttl=600)))

        balance = await client.execute(
            lambda: stripe.get_balance(),
            service="stripe",
            method="get_balance",
        )

        # Plain HTTP through the built-in transport
        user = await client.request(
            "github", "get_user", "https://api.github.com/users/octocat"
        )
    """

    def __init__(
        self,
        config: ClientConfig | None = None,
        *,
        cache_manager: CacheManager | None = None,
        retry_manager: RetryManager | None = None,
        error_handler: ErrorHandler | None = None,
        transport: HttpTransport | None = None,
    ):
        self.config = config or ClientConfig()
        self._error_handler = error_handler or get_error_handler()

        if cache_manager is not None:
            self._cache: CacheManager | None = cache_manager
        elif self.config.cache is not None:
            self._cache = CacheManager(self.config.cache, debug=self.config.debug)
        else:
            self._cache = None

        self._retry = retry_manager or RetryManager(
            self.config.retries, self._error_handler
        )
        self._circuit_breakers = (
            CircuitBreakerRegistry(self.config.circuit_breaker)
            if self.config.circuit_breaker is not None
            else None
        )
        self._transport = transport

    @classmethod
    def from_settings(cls, settings: "Settings | None" = None, **kwargs) -> "MacroAPIClient":
        """Build a client from environment-backed settings."""
        from macro_api.settings import global_settings

        return cls((settings or global_settings).client_config(), **kwargs)

    @property
    def cache(self) -> CacheManager | None:
        return self._cache

    @property
    def error_handler(self) -> ErrorHandler:
        return self._error_handler

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        service: str,
        method: str,
        params: Mapping[str, Any] | None = None,
        cache_ttl: float | timedelta | None = None,
        skip_cache: bool = False,
        skip_retry: bool = False,
    ) -> T:
        """
        Run an operation with caching, circuit breaking and retries.

        Args:
            operation: Async callable performing the actual API call
            service: Service identifier (cache key part, breaker name, stats key)
            method: Operation name within the service
            params: Parameters identifying the result for caching
            cache_ttl: Override cache TTL
            skip_cache: Neither read nor store the cache
            skip_retry: Run a single attempt

        Raises:
            MacroApiError: Always a classified error, never a raw exception
        """
        use_cache = self._cache is not None and not skip_cache
        cache_key = None

        if use_cache:
            cache_key = self._cache.generate_key(service, method, params)
            cached = await self._cache.get(cache_key)
            if cached is not None:
                self._log(f"Cache hit for {service}.{method}")
                return cached

        async def attempt() -> T:
            if skip_retry:
                try:
                    return await operation()
                except Exception as e:
                    handled = self._error_handler.handle(
                        e, service=service, operation=method
                    )
                    if handled is e:
                        raise
                    raise handled from e
            return await self._retry.execute(operation, label=method, service=service)

        if self._circuit_breakers is not None:
            breaker = self._circuit_breakers.get(service)
            try:
                result = await breaker.execute(attempt)
            except CircuitOpenError as e:
                self._error_handler.handle(e, service=service, operation=method)
                raise
        else:
            result = await attempt()

        if use_cache and result is not None:
            try:
                await self._cache.set(cache_key, result, cache_ttl)
            except CacheError as e:
                logger.warning(f"Could not cache result of {service}.{method}: {e}")

        return result

    async def request(
        self,
        service: str,
        method: str,
        url: str,
        *,
        http_method: str = "GET",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        json_data: Any = None,
        cache_ttl: float | timedelta | None = None,
        skip_cache: bool | None = None,
        skip_retry: bool = False,
    ) -> Any:
        """
        Make an HTTP request through execute().

        GET requests are cached unless skip_cache is set; other verbs are
        never cached unless skip_cache=False is passed explicitly. Per-call
        headers are part of the cache key, so responses fetched with
        different credentials are never shared.
        """
        if self._transport is None:
            self._transport = HttpTransport()
        transport = self._transport

        if skip_cache is None:
            skip_cache = http_method.upper() != "GET"

        return await self.execute(
            lambda: transport.request(
                http_method,
                url,
                params=params,
                headers=headers,
                json_data=json_data,
            ),
            service=service,
            method=method,
            params={
                "http_method": http_method.upper(),
                "url": url,
                "params": params,
                "body": json_data,
                "headers": {k.lower(): v for k, v in (headers or {}).items()},
            },
            cache_ttl=cache_ttl,
            skip_cache=skip_cache,
            skip_retry=skip_retry,
        )

    async def get_cache_stats(self) -> CacheStats | None:
        """Cache statistics, or None when caching is disabled."""
        if self._cache is None:
            return None
        return await self._cache.get_stats()

    def get_error_stats(self) -> list[ErrorStat]:
        return self._error_handler.get_error_stats()

    async def clear_cache(self, pattern: str | None = None) -> int:
        """Clear cache entries, optionally by pattern. Returns -1 for a full clear."""
        if self._cache is None:
            return 0
        if pattern:
            return await self._cache.invalidate_pattern(pattern)
        await self._cache.clear()
        return -1

    def get_circuit_status(self, service: str) -> dict[str, Any] | None:
        """Get circuit breaker status for a specific service."""
        if self._circuit_breakers is None:
            return None
        cb = self._circuit_breakers.find(service)
        return cb.get_status() if cb else None

    def reset_circuit(self, service: str) -> bool:
        """Reset circuit breaker for a service."""
        if self._circuit_breakers is None:
            return False
        return self._circuit_breakers.reset(service)

    async def get_health_status(self) -> dict[str, Any]:
        """Get health status of cache, breakers and error counters."""
        cache_stats = await self.get_cache_stats()
        return {
            "cache": cache_stats.to_dict() if cache_stats else None,
            "circuit_breakers": (
                self._circuit_breakers.get_all_status()
                if self._circuit_breakers
                else {}
            ),
            "open_circuits": (
                self._circuit_breakers.get_open_circuits()
                if self._circuit_breakers
                else []
            ),
            "errors": [stat.to_dict() for stat in self.get_error_stats()],
        }

    async def close(self) -> None:
        """Close cache connections and the HTTP transport."""
        if self._cache is not None:
            await self._cache.close()
        if self._transport is not None:
            await self._transport.close()
        logger.debug("MacroAPIClient closed")

    async def __aenter__(self) -> "MacroAPIClient":
        """Async context manager entry."""
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit."""
        await self.close()

    def _log(self, message: str) -> None:
        """Log debug message if debug mode is enabled."""
        if self.config.debug:
            logger.debug(f"[MacroAPIClient] {message}")
