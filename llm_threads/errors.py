"""Structured error types for llm_threads.

Callers can catch specific error types instead of parsing raw SDK exceptions:

    from llm_threads.errors import RetryExhaustedError, TransportError

    try:
        result = await aprompt_with_retry(session, options, Color)
    except RetryExhaustedError as exc:
        # The model never produced a valid answer; inspect the thread
        print(exc.session_id, exc.attempts, exc.last_error)
    except TransportError as exc:
        # Remote service unreachable; already retried where it occurred
        ...
"""

from __future__ import annotations

from typing import Any


class ThreadsError(Exception):
    """Base for all llm_threads errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class TransportError(ThreadsError):
    """A remote call failed. ``retryable`` is True for transient conditions."""

    def __init__(
        self,
        message: str,
        *,
        retryable: bool = True,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.retryable = retryable


class ResponseFormatError(ThreadsError):
    """Model output is not JSON or does not satisfy the requested schema."""

    def __init__(
        self,
        message: str,
        *,
        raw: str,
        cause: Exception | None = None,
        messages: list[Any] | None = None,
    ) -> None:
        super().__init__(message, original=cause)
        self.raw = raw
        self.cause = cause
        # Conversation that produced ``raw``, when a completion loop made it.
        self.messages = messages


class SemanticValidationError(ThreadsError):
    """Caller-supplied validator rejected a parsed value."""

    def __init__(self, message: str, *, value: Any = None, original: Exception | None = None) -> None:
        super().__init__(message, original=original)
        self.value = value


class ActionExecutionError(ThreadsError):
    """An action handler failed or the requested action is not registered.

    Never propagated out of a run: the registry turns it into the action's
    output text so the model can react.
    """

    def __init__(self, message: str, *, action: str, original: Exception | None = None) -> None:
        super().__init__(message, original=original)
        self.action = action


class EmptyResponseError(ThreadsError):
    """Model returned neither content nor action requests."""


class NoMessageError(ThreadsError):
    """A stream ended (or a thread is empty) without a completed message."""


class SubmissionError(ThreadsError):
    """Submitting action outputs failed after all retries; the run is aborted."""

    def __init__(
        self,
        message: str,
        *,
        run_id: str | None = None,
        thread_id: str | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.run_id = run_id
        self.thread_id = thread_id


class RetryExhaustedError(ThreadsError):
    """The retry-with-validation loop ran out of attempts.

    Carries what is needed to inspect the failing conversation externally.
    """

    def __init__(
        self,
        message: str,
        *,
        last_error: Exception,
        session_id: str | None,
        attempts: int,
        errors: list[Exception] | None = None,
    ) -> None:
        super().__init__(message, original=last_error)
        self.last_error = last_error
        self.session_id = session_id
        self.attempts = attempts
        self.errors = list(errors or [last_error])


# Patterns that indicate a transient remote condition.
_TRANSIENT_PATTERNS = [
    "rate limit",
    "rate_limit",
    "timeout",
    "timed out",
    "connection reset",
    "connection error",
    "network error",
    "service unavailable",
    "internal server error",
    "server error",
    "overloaded",
    "temporary failure",
    "500",
    "502",
    "503",
    "529",
]

# Patterns that indicate a permanent condition (retrying won't help).
_PERMANENT_PATTERNS = [
    "401",
    "403",
    "404",
    "unauthorized",
    "authentication",
    "forbidden",
    "permission",
    "not found",
    "does not exist",
    "invalid request",
    "quota",
    "billing",
]

_TRANSIENT_STATUS = frozenset({408, 409, 429, 500, 502, 503, 504, 529})


def _sdk_error_types(module: Any, names: tuple[str, ...]) -> tuple[type[BaseException], ...]:
    """Resolve optional SDK exception classes without static attribute coupling."""
    out: list[type[BaseException]] = []
    for name in names:
        candidate = getattr(module, name, None)
        if isinstance(candidate, type) and issubclass(candidate, BaseException):
            out.append(candidate)
    return tuple(out)


def is_transient(error: Exception) -> bool:
    """Decide whether a raw exception from the remote service is worth retrying.

    Uses openai exception types (litellm's exceptions subclass them), then the
    HTTP status code when present, then string matching.
    """
    if isinstance(error, TransportError):
        return error.retryable
    if isinstance(error, ThreadsError):
        return False
    try:
        import openai as _oa

        transient_types = _sdk_error_types(
            _oa,
            ("APIConnectionError", "APITimeoutError", "RateLimitError", "InternalServerError"),
        )
        if transient_types and isinstance(error, transient_types):
            error_str = str(error).lower()
            return not any(p in error_str for p in ("quota", "billing"))
        permanent_types = _sdk_error_types(
            _oa,
            (
                "AuthenticationError",
                "PermissionDeniedError",
                "NotFoundError",
                "BadRequestError",
                "UnprocessableEntityError",
            ),
        )
        if permanent_types and isinstance(error, permanent_types):
            return False
    except ImportError:
        pass

    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status in _TRANSIENT_STATUS

    if isinstance(error, (TimeoutError, ConnectionError)):
        return True

    # Fallback: string pattern matching
    error_str = str(error).lower()
    if any(p in error_str for p in _PERMANENT_PATTERNS):
        return False
    return any(p in error_str for p in _TRANSIENT_PATTERNS)


def wrap_error(error: Exception) -> ThreadsError:
    """Wrap a raw remote-call exception as a TransportError.

    If the error is already a ThreadsError, returns it unchanged.
    """
    if isinstance(error, ThreadsError):
        return error
    return TransportError(
        f"{type(error).__name__}: {error}",
        retryable=is_transient(error),
        original=error,
    )
