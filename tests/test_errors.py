"""Tests for the error taxonomy, factory and handler."""

import errno
import json

import httpx
import pytest

from macro_api.services.errors import (
    AuthenticationError,
    CircuitOpenError,
    ConflictError,
    ErrorCode,
    ErrorFactory,
    ErrorHandler,
    MacroApiError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    RequestTimeoutError,
    ServiceUnreachableError,
    ValidationError,
    ValidationIssue,
    get_error_handler,
)


class TestErrorTypes:
    """Tests for the error classes themselves."""

    def test_subclass_defaults(self):
        """Each subclass fixes its code and default status."""
        assert AuthenticationError().code == "AUTHENTICATION_ERROR"
        assert AuthenticationError().status_code == 401
        assert RateLimitError().status_code == 429
        assert NotFoundError().status_code == 404
        assert ServiceUnreachableError().status_code == 503
        assert ConflictError().status_code == 409
        assert PermissionDeniedError().code == "PERMISSION_ERROR"
        assert NetworkError().status_code == 0

    def test_base_error_defaults_to_unknown(self):
        error = MacroApiError("boom")
        assert error.code == ErrorCode.UNKNOWN.value
        assert error.status_code is None
        assert str(error) == "boom"

    def test_rate_limit_carries_retry_after(self):
        error = RateLimitError("slow down", retry_after=12, service="github")
        assert error.retry_after == 12
        assert error.service == "github"

    def test_timeout_carries_duration(self):
        error = RequestTimeoutError("too slow", timeout=5.0)
        assert error.timeout == 5.0
        assert error.status_code == 408

    def test_validation_issues_in_details(self):
        issue = ValidationIssue(field="email", message="invalid", code="format", value="x")
        error = ValidationError("bad input", issues=[issue], service="sendgrid")

        assert error.issues == [issue]
        assert error.details == {
            "issues": [{"field": "email", "message": "invalid", "code": "format", "value": "x"}]
        }

    def test_to_dict_is_json_serialisable(self):
        """Details that are not JSON friendly are reduced to something that is."""
        error = MacroApiError("wrapped", details=ValueError("inner"), service="s3")
        data = error.to_dict()

        json.dumps(data)
        assert data["name"] == "MacroApiError"
        assert data["code"] == "UNKNOWN_ERROR"
        assert data["service"] == "s3"
        assert data["details"] == {"type": "ValueError", "message": "inner"}
        assert data["timestamp"].endswith("+00:00")

    def test_to_dict_includes_stack_when_raised(self):
        try:
            raise NotFoundError("missing")
        except NotFoundError as e:
            data = e.to_dict()
        assert "NotFoundError" in data["stack"]

    def test_circuit_open_is_service_unreachable_kind(self):
        error = CircuitOpenError("stripe", 12.5)
        assert isinstance(error, ServiceUnreachableError)
        assert error.code == "SERVICE_UNREACHABLE_ERROR"
        assert error.reset_after_seconds == 12.5


class TestErrorFactoryHttpStatus:
    """Tests for ErrorFactory.from_http_status."""

    @pytest.mark.parametrize(
        "status,expected",
        [
            (400, ValidationError),
            (401, AuthenticationError),
            (403, PermissionDeniedError),
            (404, NotFoundError),
            (408, RequestTimeoutError),
            (409, ConflictError),
            (429, RateLimitError),
            (503, ServiceUnreachableError),
        ],
    )
    def test_status_table(self, status, expected):
        error = ErrorFactory.from_http_status(status, "msg", service="svc")
        assert type(error) is expected
        assert error.service == "svc"

    def test_unmapped_status_is_generic_http_error(self):
        error = ErrorFactory.from_http_status(502, "bad gateway")
        assert type(error) is MacroApiError
        assert error.code == "HTTP_ERROR"
        assert error.status_code == 502


class TestErrorFactoryTransport:
    """Tests for classification of transport failures."""

    def test_response_status_is_used(self, http_failure):
        failure = http_failure(
            "Request failed", status=404, data={"message": "No such customer"}
        )
        error = ErrorFactory.from_transport_error(failure, "stripe")

        assert isinstance(error, NotFoundError)
        assert error.message == "No such customer"
        assert error.details == {"message": "No such customer"}

    @pytest.mark.parametrize("code", ["ECONNABORTED", "TIMEOUT"])
    def test_timeout_codes(self, http_failure, code):
        error = ErrorFactory.from_transport_error(http_failure("timed out", code=code))
        assert isinstance(error, RequestTimeoutError)
        assert error.details == {"code": code}

    @pytest.mark.parametrize("code", ["ENOTFOUND", "ECONNREFUSED", "ENETDOWN", "ENETUNREACH"])
    def test_network_codes(self, http_failure, code):
        error = ErrorFactory.from_transport_error(http_failure("down", code=code))
        assert isinstance(error, NetworkError)

    def test_unknown_transport_code_is_generic_network(self, http_failure):
        error = ErrorFactory.from_transport_error(http_failure("reset", code="ECONNRESET"))
        assert type(error) is MacroApiError
        assert error.code == "NETWORK_ERROR"

    def test_opaque_error_keeps_message_and_raw_details(self):
        raw = RuntimeError("something odd")
        error = ErrorFactory.from_transport_error(raw)

        assert error.code == "UNKNOWN_ERROR"
        assert error.message == "something odd"
        assert error.details is raw

    def test_httpx_status_error(self):
        request = httpx.Request("GET", "https://api.example.com/items")
        response = httpx.Response(
            429,
            request=request,
            headers={"Retry-After": "7"},
            json={"message": "Too many requests"},
        )
        failure = httpx.HTTPStatusError("429", request=request, response=response)

        error = ErrorFactory.from_error(failure, "github")

        assert isinstance(error, RateLimitError)
        assert error.retry_after == 7.0
        assert error.message == "Too many requests"

    def test_httpx_timeout(self):
        error = ErrorFactory.from_error(httpx.ReadTimeout("read timed out"))
        assert isinstance(error, RequestTimeoutError)

    def test_httpx_connect_error(self):
        error = ErrorFactory.from_error(httpx.ConnectError("connection refused"))
        assert isinstance(error, NetworkError)

    def test_os_error_errno(self):
        error = ErrorFactory.from_error(
            ConnectionRefusedError(errno.ECONNREFUSED, "Connection refused")
        )
        assert isinstance(error, NetworkError)


class TestErrorFactoryFromError:
    """Tests for ErrorFactory.from_error."""

    def test_classified_errors_pass_through(self):
        original = NotFoundError("gone", service="notion")
        assert ErrorFactory.from_error(original) is original

    def test_idempotent(self, http_failure):
        once = ErrorFactory.from_error(http_failure("boom", status=503))
        twice = ErrorFactory.from_error(once)
        assert twice is once
        assert isinstance(twice, ServiceUnreachableError)

    def test_plain_exception_is_unknown(self):
        error = ErrorFactory.from_error(ValueError("bad"), "slack")
        assert error.code == "UNKNOWN_ERROR"
        assert error.service == "slack"

    def test_non_exception_value(self):
        error = ErrorFactory.from_error("just a string")
        assert error.message == "just a string"


class TestErrorHandler:
    """Tests for ErrorHandler."""

    def test_handle_returns_classified_error(self, error_handler, http_failure):
        error = error_handler.handle(http_failure("no", status=401), service="github")
        assert isinstance(error, AuthenticationError)

    def test_stats_count_per_code_and_service(self, error_handler):
        error_handler.handle(NotFoundError(), service="github")
        error_handler.handle(NotFoundError(), service="github")
        error_handler.handle(NotFoundError(), service="slack")
        error_handler.handle(ValueError("x"))

        stats = error_handler.get_error_stats()

        assert [(s.code, s.service, s.count) for s in stats][0] == (
            "NOT_FOUND_ERROR",
            "github",
            2,
        )
        keys = {(s.code, s.service) for s in stats}
        assert ("NOT_FOUND_ERROR", "slack") in keys
        assert ("UNKNOWN_ERROR", "unknown") in keys

    def test_stats_sorted_descending(self, error_handler):
        for _ in range(3):
            error_handler.handle(RateLimitError(), service="a")
        error_handler.handle(NotFoundError(), service="b")
        for _ in range(2):
            error_handler.handle(NetworkError(), service="c")

        counts = [s.count for s in error_handler.get_error_stats()]
        assert counts == [3, 2, 1]

    def test_reset_clears_counters(self, error_handler):
        error_handler.handle(NotFoundError(), service="github")
        error_handler.reset()
        assert error_handler.get_error_stats() == []

    def test_handlers_are_isolated(self):
        first, second = ErrorHandler(), ErrorHandler()
        first.handle(NotFoundError(), service="x")
        assert second.get_error_stats() == []

    def test_default_handler_is_shared(self):
        assert get_error_handler() is get_error_handler()

    def test_log_severity_by_status(self, error_handler, log_records):
        error_handler.handle(NotFoundError(), service="a")
        error_handler.handle(ServiceUnreachableError(), service="b")
        error_handler.handle(ValueError("odd"), service="c")

        levels = [r["level"].name for r in log_records]
        assert levels == ["WARNING", "ERROR", "ERROR"]
