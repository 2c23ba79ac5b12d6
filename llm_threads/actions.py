"""Action registry: named, schema-typed callables the model may invoke.

Actions are declared explicitly or generated from plain typed Python
functions, then exposed to the model in the OpenAI tool wire format::

    from pydantic import BaseModel
    from llm_threads.actions import Action, ActionRegistry

    class Lookup(BaseModel):
        ticket: str

    async def lookup(params: Lookup) -> str:
        ...

    def add(a: int, b: int) -> int:
        '''Add two numbers.'''
        return a + b

    registry = ActionRegistry([
        Action("lookup", lookup, description="Fetch a ticket", parameters=Lookup),
        Action.from_callable(add),
    ])
    tools = registry.to_tools()   # ready for tools=

Execution never raises for caller/model errors: unknown names, malformed
arguments, parameter validation failures and handler exceptions all become
the action's output text so the model can react.
"""

from __future__ import annotations

import asyncio
import inspect
import json as _json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, get_type_hints

from pydantic import BaseModel, ValidationError, create_model

from llm_threads.errors import ActionExecutionError
from llm_threads.messages import ActionCall, ActionOutput

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Action:
    """A named capability the model may call.

    ``handler`` receives a validated instance of ``parameters`` (or the raw
    argument dict when no parameter schema is given) and returns text. Sync
    and async handlers are both accepted; non-string results are JSON-encoded.
    """

    name: str
    handler: Callable[[Any], Any]
    description: str | None = None
    parameters: type[BaseModel] | None = None

    @classmethod
    def from_callable(cls, fn: Callable[..., Any]) -> "Action":
        """Build an Action from a typed Python function.

        Inspects the function's name, type hints, and docstring.
        Every parameter must have a type annotation (raises ValueError otherwise).
        """
        sig = inspect.signature(fn)
        try:
            hints = get_type_hints(fn)
        except Exception:
            hints = {}

        fields: dict[str, Any] = {}
        for name, param in sig.parameters.items():
            if name in ("self", "cls"):
                continue
            if name not in hints:
                raise ValueError(
                    f"Parameter {name!r} of {fn.__name__!r} has no type annotation. "
                    f"All parameters must be typed for schema generation."
                )
            default = ... if param.default is inspect.Parameter.empty else param.default
            fields[name] = (hints[name], default)

        description = ""
        if fn.__doc__:
            first_line = fn.__doc__.strip().split("\n")[0].strip()
            if first_line:
                description = first_line

        model = create_model(f"{fn.__name__}_parameters", **fields)

        async def _call(params: BaseModel) -> Any:
            kwargs = {name: getattr(params, name) for name in fields}
            result = fn(**kwargs)
            if inspect.isawaitable(result):
                result = await result
            return result

        return cls(name=fn.__name__, handler=_call, description=description, parameters=model)

    def json_schema(self) -> dict[str, Any] | None:
        if self.parameters is None:
            return None
        return self.parameters.model_json_schema()

    def to_tool(self) -> dict[str, Any]:
        """OpenAI tool wire format, shared by chat completions and assistant runs."""
        function: dict[str, Any] = {"name": self.name}
        if self.description:
            function["description"] = self.description
        schema = self.json_schema()
        if schema is not None:
            function["parameters"] = schema
        return {"type": "function", "function": function}

    def describe(self) -> str:
        """One-line description for embedding in a prompt."""
        schema = self.json_schema()
        params = _json.dumps(schema.get("properties", {})) if schema else "none"
        return f"- {self.name}: {self.description or ''} (params object: {params})"

    async def invoke(self, arguments: dict[str, Any]) -> str:
        """Validate ``arguments`` and run the handler. Raises on any failure."""
        params: Any = arguments
        if self.parameters is not None:
            params = self.parameters.model_validate(arguments)
        result = self.handler(params)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, str):
            return result
        if isinstance(result, BaseModel):
            return result.model_dump_json()
        return _json.dumps(result)


@dataclass
class ActionRecord:
    """Record of a single action execution."""

    call: ActionCall
    result: str | None = None
    error: str | None = None
    latency_s: float = 0.0

    @property
    def output(self) -> ActionOutput:
        if self.error is not None:
            return ActionOutput(
                tool_call_id=self.call.id,
                output=f"Failed with error: {self.error}",
                error=True,
            )
        return ActionOutput(tool_call_id=self.call.id, output=self.result or "")


class ActionRegistry:
    """Read-only set of uniquely named actions; safe for concurrent dispatch.

    Plain callables are converted with :meth:`Action.from_callable`.

    Raises:
        ValueError: If two actions share a name.
    """

    def __init__(self, actions: Iterable[Action | Callable[..., Any]] = ()) -> None:
        resolved: list[Action] = []
        seen: dict[str, Action] = {}
        for item in actions:
            action = item if isinstance(item, Action) else Action.from_callable(item)
            if action.name in seen:
                raise ValueError(
                    f"Duplicate action name {action.name!r}: "
                    f"{seen[action.name]!r} and {action!r} have the same name."
                )
            seen[action.name] = action
            resolved.append(action)
        self._actions: tuple[Action, ...] = tuple(resolved)

    @property
    def actions(self) -> tuple[Action, ...]:
        return self._actions

    def __len__(self) -> int:
        return len(self.actions)

    def __contains__(self, name: object) -> bool:
        return any(a.name == name for a in self.actions)

    @property
    def names(self) -> list[str]:
        return [a.name for a in self.actions]

    def get(self, name: str) -> Action | None:
        for action in self.actions:
            if action.name == name:
                return action
        return None

    def to_tools(self) -> list[dict[str, Any]]:
        return [a.to_tool() for a in self.actions]

    def describe(self) -> str:
        return "\n".join(a.describe() for a in self.actions)

    async def execute(self, call: ActionCall) -> ActionRecord:
        """Execute one call. Never raises for unknown actions or handler errors."""
        record = ActionRecord(call=call)
        t0 = time.monotonic()
        try:
            action = self.get(call.name)
            if action is None:
                raise ActionExecutionError(
                    f"Function {call.name} not found in functions: [{', '.join(self.names)}]",
                    action=call.name,
                )
            try:
                arguments = _json.loads(call.arguments) if call.arguments.strip() else {}
            except _json.JSONDecodeError as exc:
                raise ActionExecutionError(
                    f"Invalid JSON arguments for {call.name}: {exc}",
                    action=call.name,
                    original=exc,
                ) from exc
            if not isinstance(arguments, dict):
                raise ActionExecutionError(
                    f"Arguments for {call.name} must be a JSON object, got {type(arguments).__name__}",
                    action=call.name,
                )
            try:
                record.result = await action.invoke(arguments)
            except ValidationError as exc:
                raise ActionExecutionError(
                    f"Invalid arguments for {call.name}: {exc}",
                    action=call.name,
                    original=exc,
                ) from exc
            except Exception as exc:
                raise ActionExecutionError(
                    f"{type(exc).__name__}: {exc}",
                    action=call.name,
                    original=exc,
                ) from exc
        except ActionExecutionError as exc:
            record.error = str(exc)
            logger.warning("Action %s (call %s) failed: %s", call.name, call.id, exc)
        record.latency_s = round(time.monotonic() - t0, 3)
        logger.debug("Action %s (call %s) finished in %.3fs", call.name, call.id, record.latency_s)
        return record

    async def execute_all(
        self,
        calls: Iterable[ActionCall],
        *,
        parallel: bool = True,
    ) -> list[ActionRecord]:
        """Execute calls concurrently (or one by one), preserving call order."""
        calls = list(calls)
        if parallel:
            return list(await asyncio.gather(*(self.execute(c) for c in calls)))
        records: list[ActionRecord] = []
        for call in calls:
            records.append(await self.execute(call))
        return records
