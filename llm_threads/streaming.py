"""Streaming driver: run a thread, surface every event, execute actions.

State machine::

    IDLE -> STREAMING -> ACTIONS_REQUIRED -> SUBMITTING -> STREAMING -> ... -> COMPLETED

A producer task reads the remote stream into a bounded queue; the consumer
loop yields each event to the caller. When the run asks for actions, every
requested call is dispatched at once (before the event is surfaced), the
outputs are gathered once the caller resumes iteration, and the batch is
submitted as one unit. Submission returns a new stream, which is consumed the
same way until the run finishes.

If the caller stops iterating early, nothing further is dispatched or
submitted. Handler calls already running are left to finish and their
outputs are dropped. Messages already appended to the session stay valid.

Usage::

    options = StreamOptions(
        run=RunOptions(assistant_id=assistant_id),
        message={"role": "user", "content": "What's the status of ABC-1?"},
        actions=ActionRegistry([lookup_ticket]),
    )
    async for event in astream_prompt(session, options):
        if event.event == "thread.message.delta":
            ...

    message = await aprompt(session, options)
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import enum
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, AsyncIterator, Mapping

from llm_threads.actions import ActionRecord, ActionRegistry
from llm_threads.errors import NoMessageError, SubmissionError, is_transient
from llm_threads.execution_kernel import run_async_with_retry, run_sync
from llm_threads.messages import ActionCall, ActionOutput, Message, StreamEvent, message_from_remote

if TYPE_CHECKING:
    from llm_threads.hooks import Hooks
    from llm_threads.session import Session

logger = logging.getLogger(__name__)

# Handler tasks left running after the consumer stopped iterating.
_orphaned_tasks: set[asyncio.Task[ActionRecord]] = set()


class StreamState(str, enum.Enum):
    IDLE = "idle"
    STREAMING = "streaming"
    ACTIONS_REQUIRED = "actions_required"
    SUBMITTING = "submitting"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(frozen=True)
class RunOptions:
    """Parameters for starting a run. Unset fields are not sent."""

    assistant_id: str | None = None
    model: str | None = None
    instructions: str | None = None
    additional_instructions: str | None = None
    response_format: dict[str, Any] | str | None = None
    tools: tuple[dict[str, Any], ...] = ()
    extra: Mapping[str, Any] = field(default_factory=dict)

    def merged(self, **overrides: Any) -> "RunOptions":
        """Copy with ``overrides`` applied; ``None`` overrides are ignored."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)

    def to_params(self, actions: ActionRegistry | None = None) -> dict[str, Any]:
        params: dict[str, Any] = {}
        for name in ("assistant_id", "model", "instructions", "additional_instructions", "response_format"):
            value = getattr(self, name)
            if value is not None:
                params[name] = value
        tools = list(self.tools) + (actions.to_tools() if actions else [])
        if tools:
            params["tools"] = tools
        params.update(self.extra)
        return params


@dataclass(frozen=True)
class StreamOptions:
    """One streamed prompt: run parameters, optional message, available actions."""

    run: RunOptions = field(default_factory=RunOptions)
    message: Message | Mapping[str, Any] | None = None
    actions: ActionRegistry | None = None

    def with_run(self, **overrides: Any) -> "StreamOptions":
        return dataclasses.replace(self, run=self.run.merged(**overrides))


@dataclass
class StreamRun:
    """Transient handle correlating action requests with submissions."""

    thread_id: str
    run_id: str | None = None
    state: StreamState = StreamState.IDLE
    submissions: int = 0
    events: int = 0


class _Failure:
    __slots__ = ("error",)

    def __init__(self, error: BaseException) -> None:
        self.error = error


_END = object()


class StreamingDriver:
    """Drives one streamed prompt on a session. Single use."""

    def __init__(
        self,
        session: Session,
        options: StreamOptions,
        *,
        hooks: Hooks | None = None,
    ) -> None:
        self._session = session
        self._options = options
        self._hooks = hooks
        self._config = session.config
        self.run: StreamRun | None = None
        self.last_message: Message | None = None

    @property
    def state(self) -> StreamState:
        return self.run.state if self.run is not None else StreamState.IDLE

    def _transition(self, state: StreamState) -> None:
        if self.run is None:
            return
        logger.debug("Run %s on thread %s: %s -> %s", self.run.run_id, self.run.thread_id, self.run.state.value, state.value)
        self.run.state = state

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Yield every event of the run, executing actions along the way.

        Raises:
            SubmissionError: Action outputs could not be submitted.
            TransportError: The run could not be started or read.
        """
        if self.run is not None:
            raise RuntimeError("StreamingDriver is single use")
        options = self._options
        if options.message is not None:
            await self._session.append_message(options.message)
        thread_id = await self._session.get_id()
        run = self.run = StreamRun(thread_id=thread_id)
        params = options.run.to_params(options.actions)
        if self._hooks and self._hooks.before_call:
            msgs = [Message.coerce(options.message).to_chat()] if options.message is not None else []
            self._hooks.before_call(str(params.get("model") or params.get("assistant_id") or ""), msgs, params)

        try:
            stream = await self._session.transport.stream_run(thread_id, params)
            self._transition(StreamState.STREAMING)
            while True:
                pending: list[asyncio.Task[ActionRecord]] | None = None
                async with contextlib.aclosing(self._pump(stream)) as pumped:
                    async for event in pumped:
                        self._observe(run, event)
                        if event.requires_action:
                            pending = self._dispatch(run, event)
                            try:
                                yield event
                            except GeneratorExit:
                                self._orphan(pending)
                                raise
                            break
                        yield event
                if pending is None:
                    break
                records = await asyncio.gather(*pending)
                stream = await self._submit(run, [r.output for r in records])
                self._transition(StreamState.STREAMING)
        except GeneratorExit:
            logger.debug("Consumer stopped iterating run %s on thread %s", run.run_id, thread_id)
            raise
        except BaseException:
            self._transition(StreamState.FAILED)
            raise
        self._transition(StreamState.COMPLETED)

    def _observe(self, run: StreamRun, event: StreamEvent) -> None:
        run.events += 1
        if self._hooks and self._hooks.on_event:
            self._hooks.on_event(event)
        if event.message_completed:
            self.last_message = message_from_remote(event.data)
            if self._hooks and self._hooks.after_call:
                self._hooks.after_call(self.last_message)

    def _dispatch(self, run: StreamRun, event: StreamEvent) -> list[asyncio.Task[ActionRecord]]:
        run.run_id = event.run_id or run.run_id
        run.thread_id = event.thread_id or run.thread_id
        self._transition(StreamState.ACTIONS_REQUIRED)
        calls: list[ActionCall] = event.action_calls()
        registry = self._options.actions or ActionRegistry()
        logger.debug("Run %s requires %d action(s): %s", run.run_id, len(calls), [c.name for c in calls])
        return [asyncio.create_task(registry.execute(call)) for call in calls]

    @staticmethod
    def _orphan(tasks: list[asyncio.Task[ActionRecord]]) -> None:
        for task in tasks:
            if not task.done():
                _orphaned_tasks.add(task)
                task.add_done_callback(_orphaned_tasks.discard)

    async def _submit(self, run: StreamRun, outputs: list[ActionOutput]) -> AsyncIterator[StreamEvent]:
        self._transition(StreamState.SUBMITTING)
        if run.run_id is None:
            raise SubmissionError(
                f"Cannot submit action outputs on thread {run.thread_id}: no run id",
                thread_id=run.thread_id,
            )
        run_id = run.run_id

        async def _invoke(attempt: int) -> AsyncIterator[StreamEvent]:
            return await self._session.transport.submit_tool_outputs(run.thread_id, run_id, outputs)

        try:
            stream = await run_async_with_retry(
                caller="submit_tool_outputs",
                max_retries=self._config.submit_retries,
                invoke=_invoke,
                should_retry=is_transient,
                logger=logger,
                base_delay=self._config.base_delay,
                max_delay=self._config.max_delay,
            )
        except Exception as exc:
            raise SubmissionError(
                f"Error submitting action outputs for run {run_id} on thread {run.thread_id}: {exc}",
                run_id=run_id,
                thread_id=run.thread_id,
                original=exc,
            ) from exc
        run.submissions += 1
        return stream

    async def _pump(self, stream: AsyncIterator[StreamEvent]) -> AsyncIterator[StreamEvent]:
        """Read ``stream`` in a producer task through a bounded queue."""
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=self._config.stream_queue_size)

        async def _produce() -> None:
            try:
                async for event in stream:
                    await queue.put(event)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                await queue.put(_Failure(exc))
                return
            finally:
                close = getattr(stream, "aclose", None)
                if close is not None:
                    with contextlib.suppress(Exception):
                        await close()
            await queue.put(_END)

        producer = asyncio.create_task(_produce())
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    break
                if isinstance(item, _Failure):
                    raise item.error
                yield item
        finally:
            if not producer.done():
                producer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await producer


async def astream_prompt(
    session: Session,
    options: StreamOptions,
    *,
    hooks: Hooks | None = None,
) -> AsyncIterator[StreamEvent]:
    """Stream a run on ``session``, executing requested actions."""
    driver = StreamingDriver(session, options, hooks=hooks)
    async with contextlib.aclosing(driver.events()) as events:
        async for event in events:
            yield event


async def aprompt(
    session: Session,
    options: StreamOptions,
    *,
    hooks: Hooks | None = None,
) -> Message:
    """Drain a streamed run and return its last completed message.

    Raises:
        NoMessageError: The run finished without a completed message.
    """
    driver = StreamingDriver(session, options, hooks=hooks)
    async with contextlib.aclosing(driver.events()) as events:
        async for _event in events:
            pass
    if driver.last_message is None:
        raise NoMessageError(f"No message received on thread {session.thread_id}")
    return driver.last_message


def prompt(
    session: Session,
    options: StreamOptions,
    *,
    hooks: Hooks | None = None,
) -> Message:
    """Sync wrapper for :func:`aprompt`."""
    return run_sync(aprompt(session, options, hooks=hooks))
