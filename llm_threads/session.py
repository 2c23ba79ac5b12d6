"""Session: an append-only conversation log bound to a remote thread.

A Session starts ``Unbound`` (no remote identity) or ``Bound`` to an
existing thread id. The first operation that needs an identity creates the
remote thread exactly once, even when several coroutines race for it.

Usage::

    session = Session(transport)
    await session.append_message({"role": "user", "content": "Hello"})
    fork = await session.clone()          # independent copy of the log
    message = await session.prompt(StreamOptions(run=RunOptions(assistant_id=aid)))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Mapping

from llm_threads.config import ClientConfig
from llm_threads.errors import NoMessageError, TransportError, is_transient
from llm_threads.execution_kernel import run_async_with_retry
from llm_threads.messages import Message, StreamEvent
from llm_threads.transport import Transport

if TYPE_CHECKING:
    from pydantic import BaseModel

    from llm_threads.hooks import Hooks
    from llm_threads.streaming import StreamOptions
    from llm_threads.structured import Schema, StructuredResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Unbound:
    """No remote thread yet."""


@dataclass(frozen=True)
class Bound:
    """Bound to remote thread ``id``."""

    id: str


class Session:
    """Ordered, append-only message log tied to a remote conversation.

    Not safe for concurrent mutation by two logical callers; fork with
    :meth:`clone` instead.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        thread_id: str | None = None,
        config: ClientConfig | None = None,
    ) -> None:
        self._transport = transport
        self._config = config or ClientConfig.from_env()
        self._state: Unbound | Bound = Bound(thread_id) if thread_id else Unbound()
        self._lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"Session(state={self._state!r})"

    @property
    def transport(self) -> Transport:
        return self._transport

    @property
    def config(self) -> ClientConfig:
        return self._config

    @property
    def state(self) -> Unbound | Bound:
        return self._state

    @property
    def thread_id(self) -> str | None:
        """Identity if already materialized, else None (never creates one)."""
        return self._state.id if isinstance(self._state, Bound) else None

    async def get_id(self) -> str:
        """Return the remote thread id, creating the thread on first use.

        Raises:
            TransportError: If creation fails. The session stays Unbound so
                the caller may retry.
        """
        state = self._state
        if isinstance(state, Bound):
            return state.id
        async with self._lock:
            state = self._state
            if isinstance(state, Bound):
                return state.id
            thread_id = await self._transport.create_thread()
            self._state = Bound(thread_id)
            logger.debug("Session bound to thread %s", thread_id)
            return thread_id

    async def append_message(
        self,
        message: Message | Mapping[str, Any],
        *,
        retry_limit: int | None = None,
    ) -> Message:
        """Append a message, retrying transient transport failures.

        Args:
            message: A Message or a ``{"role": ..., "content": ...}`` mapping.
            retry_limit: Retries after the first attempt. Defaults to
                ``config.append_retries``.

        Raises:
            TransportError: After retries are exhausted, or immediately for
                permanent failures.
        """
        msg = Message.coerce(message)
        thread_id = await self.get_id()
        retries = self._config.append_retries if retry_limit is None else retry_limit

        async def _invoke(attempt: int) -> Message:
            return await self._transport.append_message(thread_id, msg)

        try:
            return await run_async_with_retry(
                caller="append_message",
                max_retries=retries,
                invoke=_invoke,
                should_retry=is_transient,
                logger=logger,
                base_delay=self._config.base_delay,
                max_delay=self._config.max_delay,
            )
        except (TransportError, ValueError):
            raise
        except Exception as exc:
            raise TransportError(
                f"append_message failed on thread {thread_id}: {exc}",
                retryable=is_transient(exc),
                original=exc,
            ) from exc

    async def list_messages(self, *, order: str = "desc", limit: int | None = None) -> list[Message]:
        """Messages as stored remotely. Newest first unless ``order="asc"``."""
        thread_id = await self.get_id()
        return await self._transport.list_messages(thread_id, order=order, limit=limit)

    async def latest_message(self) -> Message:
        messages = await self.list_messages(limit=1)
        if not messages:
            raise NoMessageError(f"No messages found in thread {self.thread_id}")
        return messages[0]

    async def clone(self) -> "Session":
        """Fork into a new Session whose log is a content copy of this one.

        A Session with no identity yet clones to a fresh empty Session.
        Otherwise a new thread is created and every message is replayed
        oldest first. Roles and content match; remote ids and timestamps
        do not.
        """
        fork = Session(self._transport, config=self._config)
        if self.thread_id is None:
            return fork
        messages = await self.list_messages(order="asc")
        await fork.get_id()
        for message in messages:
            await fork.append_message(Message(role=message.role, content=message.text))
        logger.debug(
            "Cloned thread %s into %s (%d messages)",
            self.thread_id,
            fork.thread_id,
            len(messages),
        )
        return fork

    # -- driver delegation ---------------------------------------------------

    def stream(self, options: StreamOptions, *, hooks: Hooks | None = None) -> AsyncIterator[StreamEvent]:
        """Stream a run on this session. See :func:`llm_threads.streaming.astream_prompt`."""
        from llm_threads.streaming import astream_prompt

        return astream_prompt(self, options, hooks=hooks)

    async def prompt(self, options: StreamOptions, *, hooks: Hooks | None = None) -> Message:
        """Run to completion and return the final message."""
        from llm_threads.streaming import aprompt

        return await aprompt(self, options, hooks=hooks)

    async def prompt_json(
        self,
        options: StreamOptions,
        schema: Schema | type[BaseModel],
        *,
        hooks: Hooks | None = None,
    ) -> StructuredResult:
        """Run to completion and parse the answer against ``schema``."""
        from llm_threads.structured import aprompt_json

        return await aprompt_json(self, options, schema, hooks=hooks)
