"""Tests for llm_threads.errors: transient classification and wrapping."""

from __future__ import annotations

import litellm
import pytest

from llm_threads.errors import (
    RetryExhaustedError,
    SemanticValidationError,
    SubmissionError,
    ThreadsError,
    TransportError,
    is_transient,
    wrap_error,
)


class _StatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code


class TestIsTransient:
    def test_transport_error_flag(self) -> None:
        assert is_transient(TransportError("x", retryable=True)) is True
        assert is_transient(TransportError("x", retryable=False)) is False

    def test_other_threads_errors_are_not_transient(self) -> None:
        assert is_transient(SemanticValidationError("nope")) is False

    def test_rate_limit(self) -> None:
        err = litellm.RateLimitError(
            message="Rate limit exceeded, please retry after 1s",
            model="gpt-4o",
            llm_provider="openai",
        )
        assert is_transient(err) is True

    def test_rate_limit_quota_is_permanent(self) -> None:
        err = litellm.RateLimitError(
            message="You exceeded your current quota, check billing",
            model="gpt-4o",
            llm_provider="openai",
        )
        assert is_transient(err) is False

    def test_auth_error_is_permanent(self) -> None:
        err = litellm.AuthenticationError(
            message="Invalid API key", model="gpt-4o", llm_provider="openai"
        )
        assert is_transient(err) is False

    def test_internal_server_error(self) -> None:
        err = litellm.InternalServerError(
            message="Internal server error", model="gpt-4o", llm_provider="openai"
        )
        assert is_transient(err) is True

    @pytest.mark.parametrize(
        ("status", "expected"),
        [(429, True), (503, True), (504, True), (400, False), (404, False)],
    )
    def test_status_code(self, status: int, expected: bool) -> None:
        assert is_transient(_StatusError("http error", status)) is expected

    def test_builtin_timeouts_and_connection_errors(self) -> None:
        assert is_transient(TimeoutError()) is True
        assert is_transient(ConnectionResetError()) is True

    @pytest.mark.parametrize(
        ("message", "expected"),
        [
            ("Service Unavailable", True),
            ("server overloaded", True),
            ("request timed out", True),
            ("thread not found", False),
            ("permission denied", False),
            ("something odd", False),
        ],
    )
    def test_string_patterns(self, message: str, expected: bool) -> None:
        assert is_transient(Exception(message)) is expected


class TestWrapError:
    def test_threads_error_returned_unchanged(self) -> None:
        err = SubmissionError("failed", run_id="run_1", thread_id="thread_1")
        assert wrap_error(err) is err

    def test_raw_error_becomes_transport_error(self) -> None:
        raw = Exception("502 bad gateway")
        wrapped = wrap_error(raw)
        assert isinstance(wrapped, TransportError)
        assert wrapped.retryable is True
        assert wrapped.original is raw
        assert str(wrapped) == "Exception: 502 bad gateway"

    def test_permanent_raw_error(self) -> None:
        wrapped = wrap_error(Exception("401 unauthorized"))
        assert isinstance(wrapped, TransportError)
        assert wrapped.retryable is False


class TestRetryExhaustedError:
    def test_carries_history(self) -> None:
        first = ValueError("one")
        last = ValueError("two")
        err = RetryExhaustedError(
            "Max retries reached", last_error=last, session_id="thread_1", attempts=2, errors=[first, last]
        )
        assert isinstance(err, ThreadsError)
        assert err.original is last
        assert err.errors == [first, last]
        assert err.session_id == "thread_1"

    def test_history_defaults_to_last_error(self) -> None:
        last = ValueError("only")
        err = RetryExhaustedError("x", last_error=last, session_id=None, attempts=1)
        assert err.errors == [last]
