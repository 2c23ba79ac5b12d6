"""Tests for the retry-with-validation loop."""

from __future__ import annotations

from dataclasses import replace
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from pydantic import BaseModel

from fakes import FakeTransport, reply
from llm_threads.completion import CompletionOptions
from llm_threads.errors import ResponseFormatError, RetryExhaustedError, SemanticValidationError
from llm_threads.hooks import Hooks
from llm_threads.retry import (
    acomplete_with_retry,
    aprompt_with_retry,
    complete_with_retry,
    prompt_with_retry,
    validate,
)
from llm_threads.session import Session
from llm_threads.streaming import RunOptions, StreamOptions


class Color(BaseModel):
    color: str


OPTIONS = StreamOptions(
    run=RunOptions(assistant_id="asst_1", instructions="Pick a color"),
    message={"role": "user", "content": "Pick a color between red and blue, prefer red"},
)


def _scripted(*answers: str):
    queue = list(answers)

    def responder(transport, thread_id, params):
        return reply(queue.pop(0) if len(queue) > 1 else queue[0])

    return responder


def _response(content: str) -> SimpleNamespace:
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=content, tool_calls=None))],
        usage=None,
    )


class TestValidate:
    @pytest.mark.asyncio
    async def test_true_and_none_accept(self) -> None:
        await validate(lambda v: True, 1)
        await validate(lambda v: None, 1)
        await validate(None, 1)

    @pytest.mark.asyncio
    async def test_false_rejects(self) -> None:
        with pytest.raises(SemanticValidationError, match="Validation of the response failed"):
            await validate(lambda v: False, 1)

    @pytest.mark.asyncio
    async def test_async_validator_raising(self) -> None:
        async def check(value: int) -> bool:
            raise ValueError("too small")

        with pytest.raises(SemanticValidationError, match="too small") as exc_info:
            await validate(check, 1)
        assert exc_info.value.value == 1


class TestPromptWithRetry:
    @pytest.mark.asyncio
    async def test_first_valid_answer_returns(self, config) -> None:
        transport = FakeTransport(_scripted('{"color": "red"}'))
        session = Session(transport, config=config)

        result = await aprompt_with_retry(session, OPTIONS, Color)

        assert result.value.color == "red"
        assert len(transport.runs) == 1

    @pytest.mark.asyncio
    async def test_always_failing_validator_exhausts(self, config) -> None:
        transport = FakeTransport(_scripted('{"color": "blue"}'))
        session = Session(transport, config=config)

        with pytest.raises(RetryExhaustedError) as exc_info:
            await aprompt_with_retry(session, OPTIONS, Color, validator=lambda v: False, max_retries=2)

        err = exc_info.value
        assert err.attempts == 3
        assert len(transport.runs) == 3
        assert len(err.errors) == 3
        assert isinstance(err.last_error, SemanticValidationError)
        assert err.session_id == session.thread_id
        assert "Max retries reached" in str(err)
        corrections = [
            text for role, text in transport.texts(session.thread_id)
            if text.startswith("Your reply contains following errors:")
        ]
        assert len(corrections) == 2

    @pytest.mark.asyncio
    async def test_max_retries_defaults_to_config(self, config) -> None:
        transport = FakeTransport(_scripted("nope"))
        session = Session(transport, config=replace(config, max_retries=1))

        with pytest.raises(RetryExhaustedError) as exc_info:
            await aprompt_with_retry(session, OPTIONS, Color)

        assert exc_info.value.attempts == 2
        assert isinstance(exc_info.value.last_error, ResponseFormatError)

    @pytest.mark.asyncio
    async def test_parse_failure_is_fed_back(self, config) -> None:
        transport = FakeTransport(_scripted("red, obviously", '{"color": "red"}'))
        session = Session(transport, config=config)

        result = await aprompt_with_retry(session, OPTIONS, Color)

        assert result.value.color == "red"
        log = transport.texts(session.thread_id)
        assert log[0] == ("user", "Pick a color between red and blue, prefer red")
        assert log[1] == ("assistant", "red, obviously")
        assert log[2][0] == "user"
        assert log[2][1].startswith("Your reply contains following errors:")
        assert "Failed to parse" in log[2][1]
        assert log[3] == ("assistant", '{"color": "red"}')

    @pytest.mark.asyncio
    async def test_caller_message_appended_once(self, config) -> None:
        transport = FakeTransport(_scripted('{"color": "blue"}', '{"color": "red"}'))
        session = Session(transport, config=config)

        await aprompt_with_retry(session, OPTIONS, Color, validator=lambda v: v.color == "red")

        prompts = [t for r, t in transport.texts(session.thread_id) if t.startswith("Pick a color")]
        assert len(prompts) == 1

    @pytest.mark.asyncio
    async def test_undelivered_caller_message_is_sent_on_next_attempt(self, config) -> None:
        transport = FakeTransport(_scripted('{"color": "red"}'))
        transport.fail_appends = 3
        session = Session(transport, config=config)

        result = await aprompt_with_retry(session, OPTIONS, Color)

        assert result.value.color == "red"
        assert transport.texts(session.thread_id) == [
            ("user", "Pick a color between red and blue, prefer red"),
            ("assistant", '{"color": "red"}'),
        ]
        assert len(transport.runs) == 1

    @pytest.mark.asyncio
    async def test_validator_error_text_reaches_the_model(self, config) -> None:
        def must_be_red(value: Color) -> None:
            if value.color != "red":
                raise ValueError(f"{value.color} is not red")

        transport = FakeTransport(_scripted('{"color": "blue"}', '{"color": "red"}'))
        session = Session(transport, config=config)

        result = await aprompt_with_retry(session, OPTIONS, Color, validator=must_be_red)

        assert result.value.color == "red"
        assert any("blue is not red" in t for _, t in transport.texts(session.thread_id))

    @pytest.mark.asyncio
    async def test_on_error_hook_sees_each_failure(self, config) -> None:
        seen: list[tuple[str, int]] = []
        hooks = Hooks(on_error=lambda exc, attempt: seen.append((type(exc).__name__, attempt)))
        transport = FakeTransport(_scripted("x", "y", '{"color": "red"}'))
        session = Session(transport, config=config)

        await aprompt_with_retry(session, OPTIONS, Color, hooks=hooks)

        assert seen == [("ResponseFormatError", 0), ("ResponseFormatError", 1)]

    def test_sync_wrapper(self, config) -> None:
        session = Session(FakeTransport(_scripted('{"color": "red"}')), config=config)
        assert prompt_with_retry(session, OPTIONS, Color).value.color == "red"


class TestCompleteWithRetry:
    @pytest.mark.asyncio
    async def test_correction_appended_to_local_messages(self, config) -> None:
        mock = AsyncMock(side_effect=[_response('{"color": "blue"}'), _response('{"color": "red"}')])
        with (
            patch("llm_threads.completion.litellm.acompletion", mock),
            patch("llm_threads.completion.litellm.completion_cost", return_value=0.0),
        ):
            result = await acomplete_with_retry(
                CompletionOptions(instructions="Pick a color", prompt="prefer red"),
                Color,
                validator=lambda v: v.color == "red",
                config=config,
            )

        assert result.value.color == "red"
        second = mock.call_args_list[1].kwargs["messages"]
        assert second[-2] == {"role": "assistant", "content": '{"color": "blue"}'}
        assert second[-1]["content"].startswith("Your reply contains following errors:")

    @pytest.mark.asyncio
    async def test_malformed_answer_reformulated_within_attempt(self, config) -> None:
        seen: list[int] = []
        mock = AsyncMock(side_effect=[_response("red, obviously"), _response('{"color": "red"}')])
        with (
            patch("llm_threads.completion.litellm.acompletion", mock),
            patch("llm_threads.completion.litellm.completion_cost", return_value=0.0),
        ):
            result = await acomplete_with_retry(
                CompletionOptions(instructions="Pick a color"),
                Color,
                config=config,
                hooks=Hooks(on_error=lambda exc, attempt: seen.append(attempt)),
            )

        assert result.value.color == "red"
        assert seen == []
        second = mock.call_args_list[1].kwargs["messages"]
        assert second[-2] == {"role": "assistant", "content": "red, obviously"}
        assert second[-1]["content"].startswith("Your latest reply contains following error:")

    @pytest.mark.asyncio
    async def test_format_failure_correction_follows_the_bad_reply(self, config) -> None:
        mock = AsyncMock(
            side_effect=[_response("x"), _response("y"), _response('{"color": "red"}')]
        )
        with (
            patch("llm_threads.completion.litellm.acompletion", mock),
            patch("llm_threads.completion.litellm.completion_cost", return_value=0.0),
        ):
            result = await acomplete_with_retry(
                CompletionOptions(instructions="Pick a color"), Color, config=config
            )

        assert result.value.color == "red"
        third = mock.call_args_list[2].kwargs["messages"]
        assert third[-2] == {"role": "assistant", "content": "y"}
        assert third[-1]["content"].startswith("Your reply contains following errors:")

    @pytest.mark.asyncio
    async def test_exhaustion_has_no_session(self, config) -> None:
        mock = AsyncMock(return_value=_response("never json"))
        with (
            patch("llm_threads.completion.litellm.acompletion", mock),
            patch("llm_threads.completion.litellm.completion_cost", return_value=0.0),
        ):
            with pytest.raises(RetryExhaustedError) as exc_info:
                await acomplete_with_retry(
                    CompletionOptions(instructions="x"), Color, max_retries=1, config=config
                )

        assert exc_info.value.attempts == 2
        assert exc_info.value.session_id is None
        # Each attempt includes one reformulated completion.
        assert mock.call_count == 4
        assert isinstance(exc_info.value.last_error, ResponseFormatError)

    def test_sync_wrapper(self, config) -> None:
        mock = AsyncMock(return_value=_response('{"color": "red"}'))
        with (
            patch("llm_threads.completion.litellm.acompletion", mock),
            patch("llm_threads.completion.litellm.completion_cost", return_value=0.0),
        ):
            result = complete_with_retry(CompletionOptions(instructions="x"), Color, config=config)
        assert result.value.color == "red"
