"""Tests for llm_threads.actions: declaration, wire format, execution."""

from __future__ import annotations

import asyncio
import json

import pytest
from pydantic import BaseModel

from llm_threads.actions import Action, ActionRecord, ActionRegistry
from llm_threads.messages import ActionCall


class Lookup(BaseModel):
    ticket: str
    verbose: bool = False


async def lookup(params: Lookup) -> str:
    return f"{params.ticket}: open" + (" (verbose)" if params.verbose else "")


def multiply(x: int, y: int = 2) -> int:
    """Multiply two integers.

    Extra detail that should not end up in the description.
    """
    return x * y


def _call(name: str, arguments: object = None, call_id: str = "call_1") -> ActionCall:
    text = arguments if isinstance(arguments, str) else json.dumps(arguments or {})
    return ActionCall(id=call_id, name=name, arguments=text)


class TestAction:
    def test_from_callable(self) -> None:
        action = Action.from_callable(multiply)
        assert action.name == "multiply"
        assert action.description == "Multiply two integers."
        schema = action.json_schema()
        assert set(schema["properties"]) == {"x", "y"}
        assert schema["required"] == ["x"]

    def test_from_callable_requires_annotations(self) -> None:
        def untyped(x):
            return x

        with pytest.raises(ValueError, match="no type annotation"):
            Action.from_callable(untyped)

    def test_to_tool_wire_format(self) -> None:
        tool = Action("lookup", lookup, description="Fetch a ticket", parameters=Lookup).to_tool()
        assert tool["type"] == "function"
        assert tool["function"]["name"] == "lookup"
        assert tool["function"]["description"] == "Fetch a ticket"
        assert tool["function"]["parameters"]["properties"]["ticket"]["type"] == "string"

    def test_to_tool_without_parameters(self) -> None:
        tool = Action("ping", lambda args: "pong").to_tool()
        assert tool == {"type": "function", "function": {"name": "ping"}}

    def test_describe(self) -> None:
        line = Action("lookup", lookup, description="Fetch a ticket", parameters=Lookup).describe()
        assert line.startswith("- lookup: Fetch a ticket (params object: ")
        assert '"ticket"' in line


class TestRegistry:
    def test_duplicate_names_rejected(self) -> None:
        with pytest.raises(ValueError, match="Duplicate action name 'multiply'"):
            ActionRegistry([multiply, Action("multiply", lambda a: "x")])

    def test_lookup_helpers(self) -> None:
        registry = ActionRegistry([multiply, Action("lookup", lookup, parameters=Lookup)])
        assert len(registry) == 2
        assert "lookup" in registry
        assert "nope" not in registry
        assert registry.names == ["multiply", "lookup"]
        assert registry.get("multiply").name == "multiply"
        assert registry.get("nope") is None
        assert len(registry.to_tools()) == 2
        assert registry.describe().count("\n") == 1

    @pytest.mark.asyncio
    async def test_execute_success(self) -> None:
        registry = ActionRegistry([Action("lookup", lookup, parameters=Lookup)])
        record = await registry.execute(_call("lookup", {"ticket": "ABC-1", "verbose": True}))
        assert record.result == "ABC-1: open (verbose)"
        assert record.error is None
        assert record.output.output == "ABC-1: open (verbose)"
        assert record.output.error is False

    @pytest.mark.asyncio
    async def test_execute_unknown_action(self) -> None:
        registry = ActionRegistry([multiply])
        record = await registry.execute(_call("doThing"))
        assert record.error == "Function doThing not found in functions: [multiply]"
        assert record.output.output.startswith("Failed with error: Function doThing not found")
        assert record.output.error is True

    @pytest.mark.asyncio
    async def test_execute_invalid_json(self) -> None:
        registry = ActionRegistry([multiply])
        record = await registry.execute(_call("multiply", "{not json"))
        assert "Invalid JSON arguments for multiply" in record.error

    @pytest.mark.asyncio
    async def test_execute_non_object_arguments(self) -> None:
        registry = ActionRegistry([multiply])
        record = await registry.execute(_call("multiply", "[1, 2]"))
        assert "must be a JSON object" in record.error

    @pytest.mark.asyncio
    async def test_execute_validation_failure(self) -> None:
        registry = ActionRegistry([multiply])
        record = await registry.execute(_call("multiply", {"x": "many"}))
        assert record.error.startswith("Invalid arguments for multiply")

    @pytest.mark.asyncio
    async def test_execute_handler_exception(self) -> None:
        def broken(params: dict) -> str:
            raise KeyError("missing")

        registry = ActionRegistry([Action("broken", broken)])
        record = await registry.execute(_call("broken"))
        assert record.error == "KeyError: 'missing'"

    @pytest.mark.asyncio
    async def test_non_string_results_are_json(self) -> None:
        registry = ActionRegistry([Action("info", lambda args: {"ok": True, "n": args["n"]})])
        record = await registry.execute(_call("info", {"n": 3}))
        assert json.loads(record.result) == {"ok": True, "n": 3}

    @pytest.mark.asyncio
    async def test_empty_arguments_mean_no_arguments(self) -> None:
        registry = ActionRegistry([Action("ping", lambda args: f"pong {args}")])
        record = await registry.execute(_call("ping", "  "))
        assert record.result == "pong {}"

    @pytest.mark.asyncio
    async def test_execute_all_preserves_order(self) -> None:
        async def wait(params: dict) -> str:
            await asyncio.sleep(params["delay"])
            return params["tag"]

        registry = ActionRegistry([Action("wait", wait)])
        calls = [
            _call("wait", {"delay": 0.02, "tag": "slow"}, call_id="c1"),
            _call("wait", {"delay": 0.0, "tag": "fast"}, call_id="c2"),
        ]

        parallel = await registry.execute_all(calls)
        sequential = await registry.execute_all(calls, parallel=False)

        assert [r.result for r in parallel] == ["slow", "fast"]
        assert [r.call.id for r in sequential] == ["c1", "c2"]

    def test_record_output_for_success_without_text(self) -> None:
        record = ActionRecord(call=_call("x"))
        assert record.output.output == ""
