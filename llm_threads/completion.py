"""Completion driver: request/response tool loop over chat completions.

Sends the message list plus the available actions through litellm. When the
model asks for actions, they are executed (concurrently unless disabled), the
assistant turn and one tool message per call are appended, and the model is
called again, until a plain answer comes back. The loop itself is unbounded;
bounding belongs to the retry layer.

Usage::

    from llm_threads import ActionRegistry, CompletionOptions, acomplete_with_actions

    result = await acomplete_with_actions(
        CompletionOptions(instructions="You manage Jira.", prompt="List my tickets"),
        ActionRegistry([list_tickets]),
    )
    print(result.message.text, result.cost)
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Sequence

import litellm

from llm_threads.actions import ActionRecord, ActionRegistry
from llm_threads.config import ClientConfig
from llm_threads.errors import EmptyResponseError, wrap_error
from llm_threads.execution_kernel import run_sync
from llm_threads.hooks import Hooks
from llm_threads.messages import ActionCall, Message

logger = logging.getLogger(__name__)

# Silence litellm's noisy default logging
litellm.suppress_debug_info = True


@dataclass(frozen=True)
class CompletionOptions:
    """Input for one completion-driver call.

    Attributes:
        instructions: System instructions, used when ``messages`` is not given.
        prompt: Optional user message appended after the initial messages.
        messages: Prior conversation (Messages or role/content mappings).
            Replaces the system message built from ``instructions``.
        model: litellm model string. Defaults to ``config.default_model``.
        parallel_actions: Execute a turn's action calls concurrently.
            ``None`` means ``config.parallel_actions``.
        extra: Additional params passed to ``litellm.acompletion``.
    """

    instructions: str = ""
    prompt: str | None = None
    messages: Sequence[Message | Mapping[str, Any]] | None = None
    model: str | None = None
    parallel_actions: bool | None = None
    extra: Mapping[str, Any] = field(default_factory=dict)

    def replace(self, **changes: Any) -> "CompletionOptions":
        return dataclasses.replace(self, **changes)


@dataclass
class CompletionResult:
    """Outcome of a completion-driver call.

    Attributes:
        message: The final assistant message (no action requests).
        messages: The whole conversation, including the final message.
        actions: Every action executed, in execution order.
        turns: Number of model calls made.
        usage: Summed token counts.
        cost: Summed cost in USD (0.0 where litellm can't price the model).
        model: The model string used.
        raw_response: The last litellm response. Excluded from repr.
    """

    message: Message
    messages: list[Message]
    actions: list[ActionRecord] = field(default_factory=list)
    turns: int = 0
    usage: dict[str, int] = field(default_factory=dict)
    cost: float = 0.0
    model: str = ""
    raw_response: Any = field(default=None, repr=False)

    @property
    def content(self) -> str:
        return self.message.text


def _extract_usage(response: Any) -> dict[str, int]:
    usage = getattr(response, "usage", None)
    if usage is None:
        return {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    return {
        "prompt_tokens": int(getattr(usage, "prompt_tokens", 0) or 0),
        "completion_tokens": int(getattr(usage, "completion_tokens", 0) or 0),
        "total_tokens": int(getattr(usage, "total_tokens", 0) or 0),
    }


def _compute_cost(response: Any) -> float:
    try:
        return float(litellm.completion_cost(completion_response=response))
    except Exception as exc:
        logger.debug("completion_cost unavailable: %s", exc)
        return 0.0


def initial_messages(options: CompletionOptions) -> list[Message]:
    """Prior messages (or the system instructions) plus the optional prompt."""
    if options.messages is not None:
        messages = [Message.coerce(m) for m in options.messages]
    else:
        messages = [Message.system(options.instructions)]
    if options.prompt:
        messages.append(Message.user(options.prompt))
    return messages


async def acomplete_with_actions(
    options: CompletionOptions,
    actions: ActionRegistry | None = None,
    *,
    config: ClientConfig | None = None,
    hooks: Hooks | None = None,
) -> CompletionResult:
    """Call the model until it answers without requesting actions.

    Unknown actions and failing handlers do not abort the loop; their error
    text becomes the action's output.

    Raises:
        EmptyResponseError: A response had neither content nor action requests.
        TransportError: The completion request itself failed.
    """
    cfg = config or ClientConfig.from_env()
    model = options.model or cfg.default_model
    registry = actions or ActionRegistry()
    parallel = cfg.parallel_actions if options.parallel_actions is None else options.parallel_actions
    messages = initial_messages(options)

    call_kwargs: dict[str, Any] = dict(options.extra)
    if len(registry):
        call_kwargs["tools"] = registry.to_tools()
        if not parallel:
            call_kwargs["parallel_tool_calls"] = False

    records: list[ActionRecord] = []
    usage = {"prompt_tokens": 0, "completion_tokens": 0, "total_tokens": 0}
    cost = 0.0
    turns = 0

    while True:
        chat = [m.to_chat() for m in messages]
        if hooks and hooks.before_call:
            hooks.before_call(model, chat, call_kwargs)
        try:
            response = await litellm.acompletion(
                model=model,
                messages=chat,
                timeout=cfg.timeout,
                **call_kwargs,
            )
        except Exception as exc:
            raise wrap_error(exc) from exc
        turns += 1
        for key, value in _extract_usage(response).items():
            usage[key] += value
        cost += _compute_cost(response)

        choices = getattr(response, "choices", None) or []
        raw_message = choices[0].message if choices else None
        if raw_message is None:
            raise EmptyResponseError(f"Invalid response (no choices) from {model}")
        if hooks and hooks.after_call:
            hooks.after_call(raw_message)

        content = getattr(raw_message, "content", None) or ""
        calls = [ActionCall.from_tool_call(tc) for tc in (getattr(raw_message, "tool_calls", None) or [])]

        if calls:
            logger.debug("Turn %d: %s requested %d action(s)", turns, model, len(calls))
            turn_records = await registry.execute_all(calls, parallel=parallel)
            records.extend(turn_records)
            messages.append(Message.assistant(content, calls))
            messages.extend(Message.tool(r.output) for r in turn_records)
            continue

        if not content:
            raise EmptyResponseError(f"Invalid response (empty message) from {model}")

        final = Message.assistant(content)
        messages.append(final)
        return CompletionResult(
            message=final,
            messages=messages,
            actions=records,
            turns=turns,
            usage=usage,
            cost=cost,
            model=model,
            raw_response=response,
        )


def complete_with_actions(
    options: CompletionOptions,
    actions: ActionRegistry | None = None,
    *,
    config: ClientConfig | None = None,
    hooks: Hooks | None = None,
) -> CompletionResult:
    """Sync wrapper for :func:`acomplete_with_actions`."""
    return run_sync(acomplete_with_actions(options, actions, config=config, hooks=hooks))
