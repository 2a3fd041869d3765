"""
CircuitBreaker - Prevents cascading failures by stopping calls to failing services.

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Service is failing, calls are blocked (fallback or CircuitOpenError)
- HALF_OPEN: Trial calls test whether the service has recovered

Transitions:
- CLOSED → OPEN: When failure_threshold consecutive failures are reached
- OPEN → HALF_OPEN: On the first call after recovery_timeout expires
- HALF_OPEN → CLOSED: After success_threshold consecutive successes
- HALF_OPEN → OPEN: On any failure

Any exception counts as a failure; errors are not classified here.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, TypeVar

from loguru import logger

from macro_api.services.errors import CircuitOpenError

T = TypeVar("T")


class CircuitState(str, Enum):
    """Circuit breaker states."""

    CLOSED = "CLOSED"  # Normal operation
    OPEN = "OPEN"  # Blocking calls
    HALF_OPEN = "HALF_OPEN"  # Testing recovery


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""

    failure_threshold: int = 5  # Consecutive failures before opening
    recovery_timeout: timedelta = timedelta(seconds=60)  # Time before half-open
    monitoring_period: timedelta = timedelta(seconds=10)  # Reported in status only
    success_threshold: int = 3  # Successes needed to close from half-open


class CircuitBreaker:
    """
    Circuit breaker guarding a single operation or resource.

    Usage:
        cb = CircuitBreaker("slack")

        result = await cb.execute(
            lambda: slack.post_message(channel, text),
            fallback=lambda: queue_for_later(channel, text),
        )
    """

    def __init__(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_time: datetime | None = None
        self._next_attempt: datetime | None = None

    @property
    def state(self) -> CircuitState:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def success_count(self) -> int:
        return self._success_count

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]] | None = None,
    ) -> T:
        """
        Run operation through the breaker.

        Raises:
            CircuitOpenError: If the circuit is open and no fallback is given
        """
        if self._state == CircuitState.OPEN:
            if self._next_attempt is not None and datetime.now() < self._next_attempt:
                if fallback is not None:
                    logger.debug(f"Circuit breaker '{self.name}' OPEN, using fallback")
                    return await fallback()
                raise CircuitOpenError(self.name, self.get_time_until_reset() or 0.0)
            self._half_open()

        try:
            result = await operation()
        except Exception:
            self.record_failure()
            raise

        self.record_success()
        return result

    def record_success(self) -> None:
        """Record a successful call."""
        self._failure_count = 0
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.config.success_threshold:
                self._close()

    def record_failure(self) -> None:
        """Record a failed call."""
        self._failure_count += 1
        self._last_failure_time = datetime.now()

        if self._state == CircuitState.HALF_OPEN:
            # Any failure in half-open reopens the circuit
            self._open()
        elif (
            self._state == CircuitState.CLOSED
            and self._failure_count >= self.config.failure_threshold
        ):
            self._open()

    def _open(self) -> None:
        """Transition to OPEN state."""
        self._state = CircuitState.OPEN
        self._success_count = 0
        self._next_attempt = datetime.now() + self.config.recovery_timeout
        logger.warning(
            f"Circuit breaker '{self.name}' OPENED after {self._failure_count} failures"
        )

    def _half_open(self) -> None:
        """Transition to HALF_OPEN state."""
        self._state = CircuitState.HALF_OPEN
        self._success_count = 0
        logger.info(f"Circuit breaker '{self.name}' transitioned to HALF_OPEN")

    def _close(self) -> None:
        """Transition to CLOSED state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt = None
        logger.info(f"Circuit breaker '{self.name}' CLOSED (recovered)")

    def reset(self) -> None:
        """Manually reset the circuit breaker."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._next_attempt = None
        self._last_failure_time = None
        logger.info(f"Circuit breaker '{self.name}' manually reset")

    def get_time_until_reset(self) -> float | None:
        """Get seconds until the next call is allowed through as a trial."""
        if self._state != CircuitState.OPEN or not self._next_attempt:
            return None

        remaining = (self._next_attempt - datetime.now()).total_seconds()
        return max(0.0, remaining)

    def get_status(self) -> dict[str, Any]:
        """Get current status as dictionary."""
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "last_failure": (
                self._last_failure_time.isoformat() if self._last_failure_time else None
            ),
            "next_attempt": (
                self._next_attempt.isoformat() if self._next_attempt else None
            ),
            "time_until_reset": self.get_time_until_reset(),
            "monitoring_period": self.config.monitoring_period.total_seconds(),
        }


class CircuitBreakerRegistry:
    """
    Registry for managing one circuit breaker per service.

    Usage:
        registry = CircuitBreakerRegistry()
        cb = registry.get("github")
    """

    def __init__(self, default_config: CircuitBreakerConfig | None = None):
        self._breakers: dict[str, CircuitBreaker] = {}
        self._default_config = default_config or CircuitBreakerConfig()

    def get(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
    ) -> CircuitBreaker:
        """Get or create a circuit breaker for a service."""
        if name not in self._breakers:
            self._breakers[name] = CircuitBreaker(
                name,
                config or self._default_config,
            )
        return self._breakers[name]

    def find(self, name: str) -> CircuitBreaker | None:
        """Get an existing circuit breaker without creating one."""
        return self._breakers.get(name)

    def get_all_status(self) -> dict[str, dict[str, Any]]:
        """Get status of all circuit breakers."""
        return {name: cb.get_status() for name, cb in self._breakers.items()}

    def reset_all(self) -> None:
        """Reset all circuit breakers."""
        for cb in self._breakers.values():
            cb.reset()
        logger.info(f"Reset {len(self._breakers)} circuit breakers")

    def reset(self, name: str) -> bool:
        """Reset a specific circuit breaker."""
        if name in self._breakers:
            self._breakers[name].reset()
            return True
        return False

    def get_open_circuits(self) -> list[str]:
        """Get list of services with open circuits."""
        return [
            name
            for name, cb in self._breakers.items()
            if cb.state == CircuitState.OPEN
        ]
