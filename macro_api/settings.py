import os
from datetime import timedelta

from dotenv import load_dotenv
from pydantic import BaseModel, Field

from macro_api.services.cache import CacheConfig, RemoteCacheConfig
from macro_api.services.circuit_breaker import CircuitBreakerConfig
from macro_api.services.client import ClientConfig
from macro_api.services.retry import RetryConfig

load_dotenv()


class Settings(BaseModel):
    # Cache Configuration
    cache_enabled: bool = Field(default=True, alias="MACRO_API_CACHE_ENABLED")
    cache_type: str = Field(default="memory", alias="MACRO_API_CACHE_TYPE")
    cache_ttl_seconds: float = Field(default=3600, gt=0, alias="MACRO_API_CACHE_TTL")
    cache_max_size: int = Field(default=1000, gt=0, alias="MACRO_API_CACHE_MAX_SIZE")
    cache_cleanup_interval_seconds: float = Field(
        default=300, gt=0, alias="MACRO_API_CACHE_CLEANUP_INTERVAL"
    )

    # Remote Cache (Redis) Configuration
    redis_url: str | None = Field(default=None, alias="MACRO_API_REDIS_URL")
    redis_key_prefix: str = Field(default="macro_api", alias="MACRO_API_REDIS_KEY_PREFIX")
    redis_password: str | None = Field(default=None, alias="MACRO_API_REDIS_PASSWORD")
    redis_db: int | None = Field(default=None, alias="MACRO_API_REDIS_DB")

    # Retry Configuration
    max_retries: int = Field(default=3, ge=0, alias="MACRO_API_MAX_RETRIES")
    retry_base_delay: float = Field(default=1.0, ge=0, alias="MACRO_API_RETRY_BASE_DELAY")
    retry_max_delay: float = Field(default=30.0, ge=0, alias="MACRO_API_RETRY_MAX_DELAY")
    retry_jitter: bool = Field(default=True, alias="MACRO_API_RETRY_JITTER")
    retry_unknown_errors: bool = Field(default=True, alias="MACRO_API_RETRY_UNKNOWN_ERRORS")

    # Circuit Breaker Configuration
    circuit_breaker_enabled: bool = Field(default=False, alias="MACRO_API_CIRCUIT_BREAKER")
    failure_threshold: int = Field(default=5, gt=0, alias="MACRO_API_FAILURE_THRESHOLD")
    recovery_timeout_seconds: float = Field(
        default=60, gt=0, alias="MACRO_API_RECOVERY_TIMEOUT"
    )
    monitoring_period_seconds: float = Field(
        default=10, gt=0, alias="MACRO_API_MONITORING_PERIOD"
    )
    success_threshold: int = Field(default=3, gt=0, alias="MACRO_API_SUCCESS_THRESHOLD")

    debug: bool = Field(default=False, alias="MACRO_API_DEBUG")

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "Settings":
        """Build settings from MACRO_API_* environment variables."""
        source = os.environ if environ is None else environ
        return cls.model_validate(
            {k: v for k, v in source.items() if k.startswith("MACRO_API_")}
        )

    def cache_config(self) -> CacheConfig | None:
        if not self.cache_enabled:
            return None
        remote = None
        if self.redis_url:
            remote = RemoteCacheConfig(
                url=self.redis_url,
                key_prefix=self.redis_key_prefix,
                password=self.redis_password,
                db=self.redis_db,
            )
        return CacheConfig(
            type=self.cache_type,
            ttl=timedelta(seconds=self.cache_ttl_seconds),
            max_size=self.cache_max_size,
            remote=remote,
            cleanup_interval=timedelta(seconds=self.cache_cleanup_interval_seconds),
        )

    def retry_config(self) -> RetryConfig:
        return RetryConfig(
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            jitter=self.retry_jitter,
            retry_unknown_errors=self.retry_unknown_errors,
        )

    def circuit_breaker_config(self) -> CircuitBreakerConfig | None:
        if not self.circuit_breaker_enabled:
            return None
        return CircuitBreakerConfig(
            failure_threshold=self.failure_threshold,
            recovery_timeout=timedelta(seconds=self.recovery_timeout_seconds),
            monitoring_period=timedelta(seconds=self.monitoring_period_seconds),
            success_threshold=self.success_threshold,
        )

    def client_config(self) -> ClientConfig:
        return ClientConfig(
            cache=self.cache_config(),
            retries=self.retry_config(),
            circuit_breaker=self.circuit_breaker_config(),
            debug=self.debug,
        )


global_settings = Settings.from_env()
