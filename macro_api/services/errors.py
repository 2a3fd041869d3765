"""
Error taxonomy, classification and handling.

Every failure that reaches a caller of this package is a MacroApiError
subclass carrying a stable ``code``. ErrorFactory turns arbitrary exceptions
(httpx errors, OSError, response-shaped objects) into one of those types,
and ErrorHandler records per-(code, service) statistics and logs them.
"""

import errno
import json
import traceback
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import httpx
from loguru import logger


class ErrorCode(str, Enum):
    """Stable identifiers for each error kind."""

    UNKNOWN = "UNKNOWN_ERROR"
    HTTP = "HTTP_ERROR"
    REQUEST = "REQUEST_ERROR"
    AUTHENTICATION = "AUTHENTICATION_ERROR"
    RATE_LIMIT = "RATE_LIMIT_ERROR"
    NOT_FOUND = "NOT_FOUND_ERROR"
    SERVICE_UNREACHABLE = "SERVICE_UNREACHABLE_ERROR"
    VALIDATION = "VALIDATION_ERROR"
    CONFIGURATION = "CONFIGURATION_ERROR"
    PERMISSION = "PERMISSION_ERROR"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED_ERROR"
    TIMEOUT = "TIMEOUT_ERROR"
    NETWORK = "NETWORK_ERROR"
    CONFLICT = "CONFLICT_ERROR"
    CACHE = "CACHE_ERROR"


class MacroApiError(Exception):
    """Base exception for every classified failure."""

    default_message = "Unknown error occurred"
    default_code = ErrorCode.UNKNOWN
    default_status: int | None = None

    def __init__(
        self,
        message: str | None = None,
        code: ErrorCode | str | None = None,
        status_code: int | None = None,
        details: Any = None,
        service: str | None = None,
    ):
        self.message = message or self.default_message
        if code is None:
            code = self.default_code
        self.code = code.value if isinstance(code, ErrorCode) else str(code)
        self.status_code = status_code if status_code is not None else self.default_status
        self.details = details
        self.service = service
        self.timestamp = datetime.now(timezone.utc)
        super().__init__(self.message)

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        """JSON-serialisable representation."""
        stack = None
        if self.__traceback__ is not None:
            stack = "".join(
                traceback.format_exception(type(self), self, self.__traceback__)
            )
        return {
            "name": self.name,
            "message": self.message,
            "code": self.code,
            "status_code": self.status_code,
            "details": _jsonable(self.details),
            "timestamp": self.timestamp.isoformat(),
            "service": self.service,
            "stack": stack,
        }

    def __repr__(self) -> str:
        return (
            f"{self.name}(code={self.code!r}, status_code={self.status_code!r}, "
            f"service={self.service!r}, message={self.message!r})"
        )


class AuthenticationError(MacroApiError):
    """Bad or missing credentials."""

    default_message = "Authentication failed"
    default_code = ErrorCode.AUTHENTICATION
    default_status = 401

    def __init__(self, message=None, service=None, details=None):
        super().__init__(message, service=service, details=details)


class RateLimitError(MacroApiError):
    """Rate limit exceeded."""

    default_message = "Rate limit exceeded"
    default_code = ErrorCode.RATE_LIMIT
    default_status = 429

    def __init__(
        self,
        message: str | None = None,
        retry_after: float | None = None,
        service: str | None = None,
        details: Any = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, service=service, details=details)


class NotFoundError(MacroApiError):
    default_message = "Resource not found"
    default_code = ErrorCode.NOT_FOUND
    default_status = 404

    def __init__(self, message=None, service=None, details=None):
        super().__init__(message, service=service, details=details)


class ServiceUnreachableError(MacroApiError):
    """Service is temporarily unavailable (503 or an open circuit)."""

    default_message = "Service is unreachable"
    default_code = ErrorCode.SERVICE_UNREACHABLE
    default_status = 503

    def __init__(self, message=None, service=None, details=None):
        super().__init__(message, service=service, details=details)


@dataclass
class ValidationIssue:
    """A single field-level validation problem."""

    field: str
    message: str
    code: str
    value: Any = None


class ValidationError(MacroApiError):
    """Caller input was rejected."""

    default_message = "Validation failed"
    default_code = ErrorCode.VALIDATION
    default_status = 400

    def __init__(
        self,
        message: str | None = None,
        issues: list[ValidationIssue] | None = None,
        service: str | None = None,
        details: Any = None,
    ):
        self.issues = list(issues or [])
        if details is None:
            details = {"issues": [asdict(issue) for issue in self.issues]}
        super().__init__(message, service=service, details=details)


class ConfigurationError(MacroApiError):
    default_message = "Configuration error"
    default_code = ErrorCode.CONFIGURATION
    default_status = 500

    def __init__(self, message=None, service=None, details=None):
        super().__init__(message, service=service, details=details)


class PermissionDeniedError(MacroApiError):
    default_message = "Insufficient permissions"
    default_code = ErrorCode.PERMISSION
    default_status = 403

    def __init__(self, message=None, service=None, details=None):
        super().__init__(message, service=service, details=details)


class QuotaExceededError(MacroApiError):
    default_message = "Quota exceeded"
    default_code = ErrorCode.QUOTA_EXCEEDED
    default_status = 429

    def __init__(self, message=None, service=None, details=None):
        super().__init__(message, service=service, details=details)


class RequestTimeoutError(MacroApiError):
    """Request timed out."""

    default_message = "Request timeout"
    default_code = ErrorCode.TIMEOUT
    default_status = 408

    def __init__(
        self,
        message: str | None = None,
        timeout: float = 30.0,
        service: str | None = None,
        details: Any = None,
    ):
        self.timeout = timeout
        super().__init__(message, service=service, details=details)


class NetworkError(MacroApiError):
    """DNS or connection-level failure."""

    default_message = "Network error"
    default_code = ErrorCode.NETWORK
    default_status = 0

    def __init__(self, message=None, service=None, details=None):
        super().__init__(message, service=service, details=details)


class ConflictError(MacroApiError):
    default_message = "Conflict error"
    default_code = ErrorCode.CONFLICT
    default_status = 409

    def __init__(self, message=None, service=None, details=None):
        super().__init__(message, service=service, details=details)


class CacheError(MacroApiError):
    """Cache operation failed."""

    default_message = "Cache operation failed"
    default_code = ErrorCode.CACHE

    def __init__(self, message=None, service=None, details=None):
        super().__init__(message, service=service, details=details)


class CircuitOpenError(ServiceUnreachableError):
    """Circuit breaker is open, request blocked."""

    def __init__(self, name: str, reset_after_seconds: float, service: str | None = None):
        self.reset_after_seconds = reset_after_seconds
        super().__init__(
            f"Circuit breaker '{name}' is OPEN, "
            f"retry after {reset_after_seconds:.1f}s",
            service=service,
            details={"circuit": name, "reset_after_seconds": reset_after_seconds},
        )


# Transport error codes, Node-style names as reported by most HTTP stacks
TIMEOUT_CODES = frozenset({"ECONNABORTED", "TIMEOUT", "ETIMEDOUT"})
NETWORK_CODES = frozenset({"ENOTFOUND", "ECONNREFUSED", "ENETDOWN", "ENETUNREACH"})


class ErrorFactory:
    """Classifies arbitrary failures into the MacroApiError taxonomy."""

    @classmethod
    def from_http_status(
        cls,
        status_code: int,
        message: str,
        service: str | None = None,
        details: Any = None,
        retry_after: float | None = None,
    ) -> MacroApiError:
        if status_code == 400:
            return ValidationError(message, service=service, details=details)
        if status_code == 401:
            return AuthenticationError(message, service, details)
        if status_code == 403:
            return PermissionDeniedError(message, service, details)
        if status_code == 404:
            return NotFoundError(message, service, details)
        if status_code == 408:
            return RequestTimeoutError(message, service=service, details=details)
        if status_code == 409:
            return ConflictError(message, service, details)
        if status_code == 429:
            return RateLimitError(message, retry_after, service, details)
        if status_code == 503:
            return ServiceUnreachableError(message, service, details)
        return MacroApiError(message, ErrorCode.HTTP, status_code, details, service)

    @classmethod
    def from_transport_error(
        cls, error: BaseException | Any, service: str | None = None
    ) -> MacroApiError:
        message = extract_error_message(error)

        response = _response_of(error)
        status = _status_of(response)
        if status is not None:
            data = _payload_of(response)
            if isinstance(data, dict) and isinstance(data.get("message"), str):
                message = data["message"]
            return cls.from_http_status(
                status,
                message,
                service,
                data,
                retry_after=_retry_after_of(response),
            )

        code = _transport_code_of(error)
        if code is not None:
            if code in TIMEOUT_CODES:
                return RequestTimeoutError(message, service=service, details={"code": code})
            if code in NETWORK_CODES:
                return NetworkError(message, service, {"code": code})
            return MacroApiError(message, ErrorCode.NETWORK, None, error, service)

        if looks_like_transport_error(error):
            return MacroApiError(message, ErrorCode.REQUEST, None, error, service)
        return MacroApiError(message, ErrorCode.UNKNOWN, None, error, service)

    @classmethod
    def from_error(cls, error: BaseException | Any, service: str | None = None) -> MacroApiError:
        if isinstance(error, MacroApiError):
            if error.service is None:
                error.service = service
            return error
        if looks_like_transport_error(error):
            return cls.from_transport_error(error, service)
        return MacroApiError(
            extract_error_message(error), ErrorCode.UNKNOWN, None, error, service
        )


def looks_like_transport_error(error: Any) -> bool:
    """True for httpx errors, OSError, and objects shaped like a failed response."""
    if isinstance(error, (httpx.HTTPError, OSError)):
        return True
    if _status_of(_response_of(error)) is not None:
        return True
    code = error.get("code") if isinstance(error, dict) else getattr(error, "code", None)
    return isinstance(code, str)


def extract_error_message(error: Any) -> str:
    if isinstance(error, BaseException):
        text = str(error)
        return text or type(error).__name__
    if isinstance(error, str):
        return error
    message = getattr(error, "message", None)
    if message is None and isinstance(error, dict):
        message = error.get("message")
    if isinstance(message, str):
        return message
    return "Unknown error occurred"


def _response_of(error: Any) -> Any:
    if isinstance(error, httpx.HTTPStatusError):
        return error.response
    if isinstance(error, dict):
        return error.get("response")
    return getattr(error, "response", None)


def _status_of(response: Any) -> int | None:
    if response is None:
        return None
    if isinstance(response, dict):
        status = response.get("status_code", response.get("status"))
    else:
        status = getattr(response, "status_code", None)
        if status is None:
            status = getattr(response, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        return status
    return None


def _payload_of(response: Any) -> Any:
    if isinstance(response, httpx.Response):
        try:
            return response.json()
        except (ValueError, httpx.ResponseNotRead):
            return None
    if isinstance(response, dict):
        return response.get("data")
    return getattr(response, "data", None)


def _retry_after_of(response: Any) -> float | None:
    headers = response.get("headers") if isinstance(response, dict) else getattr(response, "headers", None)
    if not headers:
        return None
    value = headers.get("retry-after") or headers.get("Retry-After")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


def _transport_code_of(error: Any) -> str | None:
    if isinstance(error, httpx.TimeoutException):
        return "TIMEOUT"
    if isinstance(error, httpx.ConnectError):
        return "ECONNREFUSED"
    code = error.get("code") if isinstance(error, dict) else getattr(error, "code", None)
    if isinstance(code, str):
        return code
    if isinstance(error, TimeoutError):
        return "ETIMEDOUT"
    if isinstance(error, OSError) and error.errno is not None:
        return errno.errorcode.get(error.errno)
    if isinstance(error, httpx.TransportError):
        return type(error).__name__
    return None


def _jsonable(value: Any) -> Any:
    if value is None:
        return None
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        if isinstance(value, BaseException):
            return {"type": type(value).__name__, "message": str(value)}
        return repr(value)


@dataclass
class ErrorStat:
    """Occurrence counter for one (code, service) pair."""

    code: str
    service: str
    count: int
    last_occurred: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "service": self.service,
            "count": self.count,
            "last_occurred": self.last_occurred.isoformat(),
        }


class ErrorHandler:
    """
    Classifies, counts and logs failures.

    Usage:
        handler = ErrorHandler()

        try:
            await call_api()
        except Exception as e:
            raise handler.handle(e, service="stripe", operation="get_balance") from e
    """

    def __init__(self):
        self._counts: dict[tuple[str, str], int] = {}
        self._last_seen: dict[tuple[str, str], datetime] = {}

    def classify(self, error: BaseException | Any, service: str | None = None) -> MacroApiError:
        """Classify without recording statistics."""
        return ErrorFactory.from_error(error, service)

    def handle(
        self,
        error: BaseException | Any,
        service: str | None = None,
        operation: str | None = None,
    ) -> MacroApiError:
        """Classify, record and log an error. Returns it for the caller to raise."""
        classified = ErrorFactory.from_error(error, service)
        key = (classified.code, service or classified.service or "unknown")
        self._counts[key] = self._counts.get(key, 0) + 1
        self._last_seen[key] = datetime.now(timezone.utc)
        self._log(classified, key, operation)
        return classified

    def _log(self, error: MacroApiError, key: tuple[str, str], operation: str | None) -> None:
        count = self._counts[key]
        where = f"{key[1]}.{operation}" if operation else key[1]
        status = error.status_code
        if status is not None and 400 <= status < 500:
            logger.warning(
                f"API client error [{error.code}] in {where} (x{count}): {error.message}"
            )
        elif status is not None and status >= 500:
            logger.error(
                f"API server error [{error.code}] in {where} (x{count}): {error.message}"
            )
        else:
            logger.error(
                f"API error [{error.code}] in {where} (x{count}): {error.message}"
            )

    def get_error_stats(self) -> list[ErrorStat]:
        """All tracked (code, service) pairs, most frequent first."""
        stats = [
            ErrorStat(code, service, count, self._last_seen[(code, service)])
            for (code, service), count in self._counts.items()
        ]
        return sorted(stats, key=lambda s: s.count, reverse=True)

    def reset(self) -> None:
        """Clear all counters. Meant for test isolation."""
        self._counts.clear()
        self._last_seen.clear()


# Process-wide default handler
_default_handler: ErrorHandler | None = None


def get_error_handler() -> ErrorHandler:
    """Get the shared error handler instance."""
    global _default_handler
    if _default_handler is None:
        _default_handler = ErrorHandler()
    return _default_handler
