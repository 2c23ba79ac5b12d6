"""Message, action-call and stream-event models shared by every driver."""

from __future__ import annotations

import json
from typing import Any, Literal, Mapping

from pydantic import BaseModel, ConfigDict, Field

Role = Literal["system", "user", "assistant", "tool"]

# Stream event names used by the remote run API.
EVENT_REQUIRES_ACTION = "thread.run.requires_action"
EVENT_MESSAGE_DELTA = "thread.message.delta"
EVENT_MESSAGE_COMPLETED = "thread.message.completed"
EVENT_RUN_COMPLETED = "thread.run.completed"
EVENT_RUN_FAILED = "thread.run.failed"


class ActionCall(BaseModel):
    """One action (function) invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: str = "{}"

    @classmethod
    def from_tool_call(cls, tool_call: Any) -> "ActionCall":
        """Build from an OpenAI-format tool call (SDK object or dict)."""
        if isinstance(tool_call, Mapping):
            fn = tool_call.get("function") or {}
            return cls(
                id=str(tool_call.get("id", "")),
                name=str(fn.get("name", "")),
                arguments=_arguments_text(fn.get("arguments")),
            )
        fn = getattr(tool_call, "function", None)
        return cls(
            id=str(getattr(tool_call, "id", "")),
            name=str(getattr(fn, "name", "")),
            arguments=_arguments_text(getattr(fn, "arguments", None)),
        )

    def to_tool_call(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


class ActionOutput(BaseModel):
    """Text result for one ActionCall, submitted back to the model."""

    model_config = ConfigDict(frozen=True)

    tool_call_id: str
    output: str
    error: bool = False

    def to_submission(self) -> dict[str, str]:
        return {"tool_call_id": self.tool_call_id, "output": self.output}


class Message(BaseModel):
    """A single entry in a conversation log. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    role: Role
    content: str | list[dict[str, Any]] = ""
    tool_call_id: str | None = None
    tool_calls: tuple[ActionCall, ...] = ()
    id: str | None = Field(default=None, description="Remote identifier, if stored remotely.")

    @classmethod
    def system(cls, content: str) -> "Message":
        return cls(role="system", content=content)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str, tool_calls: list[ActionCall] | None = None) -> "Message":
        return cls(role="assistant", content=content, tool_calls=tuple(tool_calls or ()))

    @classmethod
    def tool(cls, output: ActionOutput) -> "Message":
        return cls(role="tool", content=output.output, tool_call_id=output.tool_call_id)

    @classmethod
    def coerce(cls, message: "Message | Mapping[str, Any]") -> "Message":
        """Accept a Message or a ``{"role": ..., "content": ...}`` mapping."""
        if isinstance(message, Message):
            return message
        data = dict(message)
        raw_calls = data.pop("tool_calls", None) or []
        calls = tuple(ActionCall.from_tool_call(tc) for tc in raw_calls)
        return cls(tool_calls=calls, **data)

    @property
    def text(self) -> str:
        """Plain-text rendering of the content.

        Non-text blocks render as ``message with <type>``.
        """
        if isinstance(self.content, str):
            return self.content
        parts: list[str] = []
        for block in self.content:
            block_type = block.get("type")
            if block_type == "text":
                text = block.get("text")
                if isinstance(text, Mapping):
                    text = text.get("value", "")
                parts.append(str(text or ""))
            else:
                parts.append(f"message with {block_type}")
        return "\n".join(parts)

    def to_chat(self) -> dict[str, Any]:
        """Chat-completions wire format."""
        out: dict[str, Any] = {"role": self.role, "content": self.text}
        if self.tool_calls:
            out["tool_calls"] = [tc.to_tool_call() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            out["tool_call_id"] = self.tool_call_id
        return out


class StreamEvent(BaseModel):
    """One event from a remote run stream."""

    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    event: str
    data: Any = None

    @property
    def requires_action(self) -> bool:
        return self.event == EVENT_REQUIRES_ACTION

    @property
    def message_completed(self) -> bool:
        return self.event == EVENT_MESSAGE_COMPLETED

    def action_calls(self) -> list[ActionCall]:
        """Action calls requested by a ``thread.run.requires_action`` event."""
        required = _get(self.data, "required_action")
        submit = _get(required, "submit_tool_outputs")
        tool_calls = _get(submit, "tool_calls") or []
        return [ActionCall.from_tool_call(tc) for tc in tool_calls]

    @property
    def run_id(self) -> str | None:
        value = _get(self.data, "id")
        return str(value) if value is not None else None

    @property
    def thread_id(self) -> str | None:
        value = _get(self.data, "thread_id")
        return str(value) if value is not None else None


def message_from_remote(data: Any) -> Message:
    """Convert a remote thread message (SDK object or dict) into a Message."""
    role = _get(data, "role") or "assistant"
    raw_content = _get(data, "content")
    if isinstance(raw_content, str):
        content: str | list[dict[str, Any]] = raw_content
    else:
        content = [_to_dict(block) for block in (raw_content or [])]
    return Message(role=role, content=content, id=_get(data, "id"))


def _get(obj: Any, key: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, Mapping):
        return obj.get(key)
    return getattr(obj, key, None)


def _to_dict(block: Any) -> dict[str, Any]:
    if isinstance(block, Mapping):
        return dict(block)
    dump = getattr(block, "model_dump", None)
    if callable(dump):
        return dump()
    return {"type": str(getattr(block, "type", "unknown"))}


def _arguments_text(arguments: Any) -> str:
    if arguments is None:
        return "{}"
    if isinstance(arguments, str):
        return arguments
    return json.dumps(arguments)
