"""
Resilience core shared by every service wrapper.

Provides:
- CacheManager: Memory, Redis and two-tier caching with deterministic keys
- MacroApiError and subclasses: Typed error taxonomy with ErrorFactory/ErrorHandler
- RetryManager: Exponential backoff driven by the error taxonomy
- CircuitBreaker: Fail-fast protection for degraded dependencies
- MacroAPIClient: Unified execute() combining all patterns
"""

from macro_api.services.errors import (
    AuthenticationError,
    CacheError,
    CircuitOpenError,
    ConfigurationError,
    ConflictError,
    ErrorCode,
    ErrorFactory,
    ErrorHandler,
    MacroApiError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    QuotaExceededError,
    RateLimitError,
    RequestTimeoutError,
    ServiceUnreachableError,
    ValidationError,
    ValidationIssue,
    get_error_handler,
)
from macro_api.services.cache import (
    CacheConfig,
    CacheEntry,
    CacheManager,
    CacheStats,
    CacheType,
    RemoteCacheConfig,
)
from macro_api.services.cache_providers import (
    CacheProvider,
    HybridCacheProvider,
    MemoryCacheProvider,
    RedisCacheProvider,
)
from macro_api.services.retry import RetryConfig, RetryManager
from macro_api.services.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from macro_api.services.transport import HttpTransport
from macro_api.services.client import ClientConfig, MacroAPIClient

__all__ = [
    # Errors
    "MacroApiError",
    "ErrorCode",
    "AuthenticationError",
    "RateLimitError",
    "NotFoundError",
    "ServiceUnreachableError",
    "ValidationError",
    "ValidationIssue",
    "ConfigurationError",
    "PermissionDeniedError",
    "QuotaExceededError",
    "RequestTimeoutError",
    "NetworkError",
    "ConflictError",
    "CacheError",
    "CircuitOpenError",
    "ErrorFactory",
    "ErrorHandler",
    "get_error_handler",
    # Cache
    "CacheConfig",
    "CacheEntry",
    "CacheManager",
    "CacheStats",
    "CacheType",
    "RemoteCacheConfig",
    "CacheProvider",
    "MemoryCacheProvider",
    "RedisCacheProvider",
    "HybridCacheProvider",
    # Retry
    "RetryConfig",
    "RetryManager",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Client
    "HttpTransport",
    "ClientConfig",
    "MacroAPIClient",
]
