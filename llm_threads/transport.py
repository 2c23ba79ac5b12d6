"""Transport contract for the remote conversation service, plus the default
implementation over the OpenAI Assistants (threads/runs) API.

Every component takes its transport as a constructor parameter. Only the
application boundary should call :func:`create_transport`::

    transport = create_transport(ClientConfig.from_env())
    session = Session(transport)

Implementations must raise :class:`~llm_threads.errors.TransportError` with
``retryable`` set for transient conditions so bounded retry is meaningful.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Protocol, runtime_checkable

from llm_threads.config import ClientConfig
from llm_threads.errors import wrap_error
from llm_threads.messages import ActionOutput, Message, StreamEvent, message_from_remote

logger = logging.getLogger(__name__)

_REMOTE_ROLES = frozenset({"user", "assistant"})


@runtime_checkable
class Transport(Protocol):
    """Remote conversation service operations consumed by the core."""

    async def create_thread(self) -> str: ...

    async def append_message(self, thread_id: str, message: Message) -> Message: ...

    async def list_messages(
        self,
        thread_id: str,
        *,
        order: str = "desc",
        limit: int | None = None,
    ) -> list[Message]: ...

    async def stream_run(
        self, thread_id: str, params: dict[str, Any]
    ) -> AsyncIterator[StreamEvent]: ...

    async def submit_tool_outputs(
        self,
        thread_id: str,
        run_id: str,
        outputs: list[ActionOutput],
    ) -> AsyncIterator[StreamEvent]: ...

    async def list_assistants(self) -> list[dict[str, Any]]: ...

    async def create_assistant(self, params: dict[str, Any]) -> dict[str, Any]: ...


async def _events(stream: Any) -> AsyncIterator[StreamEvent]:
    """Adapt an SDK event stream into StreamEvents, wrapping read failures."""
    try:
        async for raw in stream:
            yield StreamEvent(event=str(getattr(raw, "event", "")), data=getattr(raw, "data", None))
    except Exception as exc:
        raise wrap_error(exc) from exc


def _assistant_dict(assistant: Any) -> dict[str, Any]:
    return {
        "id": getattr(assistant, "id", None),
        "name": getattr(assistant, "name", None),
        "model": getattr(assistant, "model", None),
        "description": getattr(assistant, "description", None),
    }


class OpenAIAssistantsTransport:
    """Transport over ``openai.AsyncOpenAI().beta`` threads, messages and runs."""

    def __init__(self, client: Any) -> None:
        self._client = client

    async def create_thread(self) -> str:
        try:
            thread = await self._client.beta.threads.create()
        except Exception as exc:
            raise wrap_error(exc) from exc
        logger.debug("Created thread %s", thread.id)
        return str(thread.id)

    async def append_message(self, thread_id: str, message: Message) -> Message:
        if message.role not in _REMOTE_ROLES:
            raise ValueError(
                f"Remote threads only store user/assistant messages, got role {message.role!r}"
            )
        try:
            created = await self._client.beta.threads.messages.create(
                thread_id,
                role=message.role,
                content=message.text,
            )
        except Exception as exc:
            raise wrap_error(exc) from exc
        return message_from_remote(created)

    async def list_messages(
        self,
        thread_id: str,
        *,
        order: str = "desc",
        limit: int | None = None,
    ) -> list[Message]:
        """One page of ``limit`` messages, or every page when ``limit`` is None."""
        kwargs: dict[str, Any] = {"order": order}
        if limit is not None:
            kwargs["limit"] = limit
        messages: list[Message] = []
        while True:
            try:
                page = await self._client.beta.threads.messages.list(thread_id, **kwargs)
            except Exception as exc:
                raise wrap_error(exc) from exc
            messages.extend(message_from_remote(m) for m in page.data)
            if limit is not None or not page.data or not getattr(page, "has_more", False):
                return messages
            kwargs["after"] = page.data[-1].id

    async def stream_run(
        self, thread_id: str, params: dict[str, Any]
    ) -> AsyncIterator[StreamEvent]:
        try:
            stream = await self._client.beta.threads.runs.create(
                thread_id, stream=True, **params
            )
        except Exception as exc:
            raise wrap_error(exc) from exc
        return _events(stream)

    async def submit_tool_outputs(
        self,
        thread_id: str,
        run_id: str,
        outputs: list[ActionOutput],
    ) -> AsyncIterator[StreamEvent]:
        try:
            stream = await self._client.beta.threads.runs.submit_tool_outputs(
                run_id,
                thread_id=thread_id,
                tool_outputs=[o.to_submission() for o in outputs],
                stream=True,
            )
        except Exception as exc:
            raise wrap_error(exc) from exc
        return _events(stream)

    async def list_assistants(self) -> list[dict[str, Any]]:
        try:
            page = await self._client.beta.assistants.list()
        except Exception as exc:
            raise wrap_error(exc) from exc
        return [_assistant_dict(a) for a in page.data]

    async def create_assistant(self, params: dict[str, Any]) -> dict[str, Any]:
        try:
            assistant = await self._client.beta.assistants.create(**params)
        except Exception as exc:
            raise wrap_error(exc) from exc
        return _assistant_dict(assistant)


def create_transport(config: ClientConfig | None = None, **client_kwargs: Any) -> OpenAIAssistantsTransport:
    """Build the default transport. Use at the application boundary only.

    The SDK's own retries are disabled; llm_threads retries at the point of
    occurrence with its own bounds.
    """
    from openai import AsyncOpenAI

    cfg = config or ClientConfig.from_env()
    client_kwargs.setdefault("timeout", cfg.timeout)
    client_kwargs.setdefault("max_retries", 0)
    return OpenAIAssistantsTransport(AsyncOpenAI(**client_kwargs))
