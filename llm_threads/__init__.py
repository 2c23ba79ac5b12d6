"""Structured, self-correcting conversations with a remote LLM thread service.

The model's answer is required to parse against a schema. Failures are fed
back into the conversation and retried, several candidates can be sampled
and ranked by the model itself, and tool calls requested mid-stream are
executed and resumed transparently.

Usage:
    from pydantic import BaseModel
    from llm_threads import RunOptions, Session, StreamOptions, aprompt_with_retry, create_transport

    class Color(BaseModel):
        color: str

    session = Session(create_transport())
    options = StreamOptions(
        run=RunOptions(assistant_id="asst_123", instructions="Pick a color"),
        message={"role": "user", "content": "Between red and blue, prefer red"},
    )
    result = await aprompt_with_retry(session, options, Color)
    print(result.value.color)

    # Best of three, ranked by the model
    best = await aprompt_with_pick(session, options, Color, choices=3)

    # Chat completions with tools, no remote thread
    from llm_threads import ActionRegistry, CompletionOptions, complete_with_actions

    result = complete_with_actions(
        CompletionOptions(instructions="You manage Jira.", prompt="List my tickets"),
        ActionRegistry([list_tickets]),
    )
"""

from llm_threads.config import ClientConfig, load_api_keys

# Keys already in os.environ win over the keys file.
_auto_loaded_keys: frozenset[str] = frozenset(load_api_keys())

from llm_threads.actions import Action, ActionRecord, ActionRegistry  # noqa: E402
from llm_threads.assistant import Assistant  # noqa: E402
from llm_threads.completion import (  # noqa: E402
    CompletionOptions,
    CompletionResult,
    acomplete_with_actions,
    complete_with_actions,
)
from llm_threads.errors import (  # noqa: E402
    ActionExecutionError,
    EmptyResponseError,
    NoMessageError,
    ResponseFormatError,
    RetryExhaustedError,
    SemanticValidationError,
    SubmissionError,
    ThreadsError,
    TransportError,
    is_transient,
    wrap_error,
)
from llm_threads.hooks import Hooks  # noqa: E402
from llm_threads.messages import ActionCall, ActionOutput, Message, StreamEvent  # noqa: E402
from llm_threads.prompts import render_prompt  # noqa: E402
from llm_threads.ranking import (  # noqa: E402
    RankingResponse,
    aprompt_with_pick,
    aprompt_with_pick_all,
    prompt_with_pick,
    prompt_with_pick_all,
)
from llm_threads.retry import (  # noqa: E402
    acomplete_with_retry,
    aprompt_with_retry,
    complete_with_retry,
    prompt_with_retry,
)
from llm_threads.session import Bound, Session, Unbound  # noqa: E402
from llm_threads.streaming import (  # noqa: E402
    RunOptions,
    StreamingDriver,
    StreamOptions,
    StreamState,
    aprompt,
    astream_prompt,
    prompt,
)
from llm_threads.structured import (  # noqa: E402
    StructuredResult,
    acomplete_json,
    aprompt_json,
    parse_structured,
)
from llm_threads.transport import OpenAIAssistantsTransport, Transport, create_transport  # noqa: E402

__all__ = [
    "Action",
    "ActionCall",
    "ActionExecutionError",
    "ActionOutput",
    "ActionRecord",
    "ActionRegistry",
    "Assistant",
    "Bound",
    "ClientConfig",
    "CompletionOptions",
    "CompletionResult",
    "EmptyResponseError",
    "Hooks",
    "Message",
    "NoMessageError",
    "OpenAIAssistantsTransport",
    "RankingResponse",
    "ResponseFormatError",
    "RetryExhaustedError",
    "RunOptions",
    "SemanticValidationError",
    "Session",
    "StreamEvent",
    "StreamOptions",
    "StreamState",
    "StreamingDriver",
    "StructuredResult",
    "SubmissionError",
    "ThreadsError",
    "Transport",
    "TransportError",
    "Unbound",
    "acomplete_json",
    "acomplete_with_actions",
    "acomplete_with_retry",
    "aprompt",
    "aprompt_json",
    "aprompt_with_pick",
    "aprompt_with_pick_all",
    "aprompt_with_retry",
    "astream_prompt",
    "complete_with_actions",
    "complete_with_retry",
    "create_transport",
    "is_transient",
    "load_api_keys",
    "parse_structured",
    "prompt",
    "prompt_with_pick",
    "prompt_with_pick_all",
    "prompt_with_retry",
    "render_prompt",
    "wrap_error",
]
