"""Retry-with-validation: feed each failure back to the model and ask again.

Every failed attempt (transport, parse, or caller-supplied validator) is
turned into a corrective user message, appended to the conversation, and the
structured prompt is reissued. After ``max_retries`` retries the loop gives
up with :class:`RetryExhaustedError`, which carries the session id so the
failing conversation can be inspected.

Usage::

    def is_primary(value: Color) -> bool:
        return value.color in {"red", "green", "blue"}

    result = await aprompt_with_retry(session, options, Color, validator=is_primary)
"""

from __future__ import annotations

import dataclasses
import inspect
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Union

from llm_threads.actions import ActionRegistry
from llm_threads.completion import CompletionOptions, initial_messages
from llm_threads.config import ClientConfig
from llm_threads.errors import ResponseFormatError, RetryExhaustedError, SemanticValidationError
from llm_threads.execution_kernel import run_sync
from llm_threads.messages import Message
from llm_threads.prompts import corrective_message
from llm_threads.structured import (
    Schema,
    StructuredResult,
    acomplete_parsed,
    aprompt_json,
    json_completion_options,
)

if TYPE_CHECKING:
    from llm_threads.hooks import Hooks
    from llm_threads.session import Session
    from llm_threads.streaming import StreamOptions

logger = logging.getLogger(__name__)

Validator = Callable[[Any], Union[bool, None, Awaitable[Union[bool, None]]]]

# Retries allowed for appending a corrective message.
CORRECTION_APPEND_RETRIES = 2


async def validate(validator: Validator | None, value: Any) -> None:
    """Run a sync or async validator.

    Returning ``False`` or raising rejects the value; ``True`` or ``None``
    accepts it.

    Raises:
        SemanticValidationError: The value was rejected.
    """
    if validator is None:
        return
    try:
        outcome = validator(value)
        if inspect.isawaitable(outcome):
            outcome = await outcome
    except SemanticValidationError:
        raise
    except Exception as exc:
        raise SemanticValidationError(str(exc), value=value, original=exc) from exc
    if outcome is False:
        raise SemanticValidationError(
            "Validation of the response failed. Please try again.", value=value
        )


async def _run_with_feedback(
    *,
    caller: str,
    attempt: Callable[[int], Awaitable[StructuredResult[Any]]],
    feedback: Callable[[Exception], Awaitable[None]],
    validator: Validator | None,
    max_retries: int,
    session_id: Callable[[], str | None],
    hooks: Hooks | None,
) -> StructuredResult[Any]:
    errors: list[Exception] = []
    for n in range(max_retries + 1):
        try:
            result = await attempt(n)
            await validate(validator, result.value)
        except Exception as exc:
            errors.append(exc)
            if hooks and hooks.on_error:
                hooks.on_error(exc, n)
            if n >= max_retries:
                sid = session_id()
                logger.error(
                    "%s gave up after %d attempts (thread %s): %s", caller, n + 1, sid, exc
                )
                raise RetryExhaustedError(
                    f"Max retries reached. Last error: {exc}, thread id: {sid}",
                    last_error=exc,
                    session_id=sid,
                    attempts=n + 1,
                    errors=errors,
                ) from exc
            logger.warning(
                "%s attempt %d/%d failed, feeding error back: %s",
                caller,
                n + 1,
                max_retries + 1,
                exc,
            )
            await feedback(exc)
            continue
        if n > 0:
            logger.info("%s succeeded after %d retries", caller, n)
        return result

    raise RuntimeError(f"{caller} exhausted without returning")


async def aprompt_with_retry(
    session: Session,
    options: StreamOptions,
    schema: Schema,
    *,
    validator: Validator | None = None,
    max_retries: int | None = None,
    hooks: Hooks | None = None,
) -> StructuredResult[Any]:
    """Streamed structured prompt with corrective retries on ``session``.

    Corrective messages are appended to ``session`` itself, so on success the
    session holds the whole exchange including the failed attempts.

    Raises:
        RetryExhaustedError: ``max_retries + 1`` attempts all failed.
        TransportError: A corrective message could not be appended.
    """
    retries = session.config.max_retries if max_retries is None else max_retries
    unsent = options.message

    async def _attempt(n: int) -> StructuredResult[Any]:
        nonlocal unsent
        # The caller's message goes in once; later attempts resume after the correction.
        if unsent is not None:
            await session.append_message(unsent)
            unsent = None
        return await aprompt_json(session, _without_message(options), schema, hooks=hooks)

    async def _feedback(exc: Exception) -> None:
        if unsent is not None:
            # The model never saw the prompt; there is nothing to correct.
            return
        await session.append_message(corrective_message(exc), retry_limit=CORRECTION_APPEND_RETRIES)

    return await _run_with_feedback(
        caller="aprompt_with_retry",
        attempt=_attempt,
        feedback=_feedback,
        validator=validator,
        max_retries=retries,
        session_id=lambda: session.thread_id,
        hooks=hooks,
    )


def _without_message(options: StreamOptions) -> StreamOptions:
    return dataclasses.replace(options, message=None)


async def acomplete_with_retry(
    options: CompletionOptions,
    schema: Schema,
    actions: ActionRegistry | None = None,
    *,
    validator: Validator | None = None,
    max_retries: int | None = None,
    config: ClientConfig | None = None,
    hooks: Hooks | None = None,
) -> StructuredResult[Any]:
    """Completion-driver structured call with corrective retries.

    Each attempt is an :func:`~llm_threads.structured.acomplete_parsed` call,
    so a malformed answer is first reformulated once inside the attempt. The
    conversation is local: each correction is appended to the messages of
    the failed attempt and the whole list is resent.

    Raises:
        RetryExhaustedError: ``max_retries + 1`` attempts all failed.
    """
    cfg = config or ClientConfig.from_env()
    retries = cfg.max_retries if max_retries is None else max_retries
    base = json_completion_options(options, schema)
    history: list[Message] = initial_messages(base)
    last: list[Message] | None = None

    async def _attempt(n: int) -> StructuredResult[Any]:
        nonlocal last
        last = None
        current = base.replace(messages=history, prompt=None)
        try:
            result = await acomplete_parsed(current, schema, actions, config=cfg, hooks=hooks)
        except ResponseFormatError as exc:
            last = exc.messages
            raise
        last = result.source.messages
        return result

    async def _feedback(exc: Exception) -> None:
        nonlocal history
        history = [*(last or history), Message.coerce(corrective_message(exc))]

    return await _run_with_feedback(
        caller="acomplete_with_retry",
        attempt=_attempt,
        feedback=_feedback,
        validator=validator,
        max_retries=retries,
        session_id=lambda: None,
        hooks=hooks,
    )


def prompt_with_retry(
    session: Session,
    options: StreamOptions,
    schema: Schema,
    *,
    validator: Validator | None = None,
    max_retries: int | None = None,
    hooks: Hooks | None = None,
) -> StructuredResult[Any]:
    """Sync wrapper for :func:`aprompt_with_retry`."""
    return run_sync(
        aprompt_with_retry(
            session, options, schema, validator=validator, max_retries=max_retries, hooks=hooks
        )
    )


def complete_with_retry(
    options: CompletionOptions,
    schema: Schema,
    actions: ActionRegistry | None = None,
    *,
    validator: Validator | None = None,
    max_retries: int | None = None,
    config: ClientConfig | None = None,
    hooks: Hooks | None = None,
) -> StructuredResult[Any]:
    """Sync wrapper for :func:`acomplete_with_retry`."""
    return run_sync(
        acomplete_with_retry(
            options,
            schema,
            actions,
            validator=validator,
            max_retries=max_retries,
            config=config,
            hooks=hooks,
        )
    )
