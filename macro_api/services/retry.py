"""
RetryManager - Re-runs failing async operations with exponential backoff.

Policy:
- ServiceUnreachableError, RequestTimeoutError (408) and NetworkError are retried
- Other 4xx errors are not retried, except RateLimitError
- 5xx errors are retried
- Failures that classify as UNKNOWN_ERROR are retried when
  RetryConfig.retry_unknown_errors is set (the default)

Cancelling the awaiting task interrupts the backoff sleep immediately.
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from loguru import logger

from macro_api.services.errors import (
    ErrorCode,
    ErrorFactory,
    ErrorHandler,
    MacroApiError,
    NetworkError,
    RateLimitError,
    RequestTimeoutError,
    ServiceUnreachableError,
    get_error_handler,
)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryConfig:
    """Configuration for RetryManager. Delays are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: bool = True
    retry_unknown_errors: bool = True


class RetryManager:
    """
    Executes operations with bounded retries.

    Usage:
        retry = RetryManager(RetryConfig(max_retries=2, base_delay=0.5))

        data = await retry.execute(
            lambda: client.get("/charges"), label="list_charges", service="stripe"
        )
    """

    def __init__(
        self,
        config: RetryConfig | None = None,
        error_handler: ErrorHandler | None = None,
    ):
        self.config = config or RetryConfig()
        self._error_handler = error_handler or get_error_handler()

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        label: str | None = None,
        service: str | None = None,
    ) -> T:
        """
        Run operation, retrying retryable failures.

        Raises:
            MacroApiError: the classified last failure once retries are
                exhausted or a non-retryable error occurs
        """
        attempt = 0
        while True:
            try:
                return await operation()
            except Exception as e:
                attempt += 1
                classified = ErrorFactory.from_error(e, service)

                if attempt > self.config.max_retries or not self.should_retry(e):
                    handled = self._error_handler.handle(
                        e, service=service, operation=label
                    )
                    if handled is e:
                        raise
                    raise handled from e

                delay = self.calculate_delay(attempt)
                logger.warning(
                    f"Retrying {label or 'operation'} "
                    f"(attempt {attempt}/{self.config.max_retries}) "
                    f"after {delay:.2f}s: [{classified.code}] {classified.message}"
                )
                await asyncio.sleep(delay)

    def should_retry(self, error: BaseException) -> bool:
        """Decide whether a failure is worth another attempt."""
        if not isinstance(error, MacroApiError):
            classified = ErrorFactory.from_error(error)
            if classified.code == ErrorCode.UNKNOWN.value:
                return self.config.retry_unknown_errors
            error = classified

        # Timeouts carry 408 but are transient
        if isinstance(error, (ServiceUnreachableError, RequestTimeoutError, NetworkError)):
            return True

        status = error.status_code
        if status is not None and 400 <= status < 500:
            return isinstance(error, RateLimitError)
        if status is not None and status >= 500:
            return True
        # Transport failures without a status (connection resets, protocol errors)
        return error.code in (ErrorCode.NETWORK.value, ErrorCode.REQUEST.value)

    def calculate_delay(self, attempt: int) -> float:
        """Backoff for the given 1-based attempt, in seconds."""
        delay = self.base_delay_for(attempt)
        if self.config.jitter:
            delay *= 0.5 + random.random() * 0.5
        return min(delay, self.config.max_delay)

    def base_delay_for(self, attempt: int) -> float:
        """Pre-jitter delay: base_delay * 2^(attempt-1), clamped to max_delay."""
        return min(self.config.base_delay * 2 ** (attempt - 1), self.config.max_delay)
