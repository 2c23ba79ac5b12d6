"""Structured-result extraction on top of either driver.

The answer must be a single JSON value satisfying a schema, given either as a
pydantic model class or as a JSON Schema dict. Every entry point returns a
:class:`StructuredResult` ``(value, raw)`` so the raw model text is always
available for diagnosis::

    class Color(BaseModel):
        color: str

    result = await aprompt_json(session, options, Color)
    result.value.color
    value, raw = result
"""

from __future__ import annotations

import dataclasses
import json as _json
import logging
import re
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, Iterator, TypeVar, Union

import jsonschema
from pydantic import BaseModel, ValidationError

from llm_threads.actions import ActionRegistry
from llm_threads.completion import CompletionOptions, acomplete_with_actions
from llm_threads.config import ClientConfig
from llm_threads.errors import ResponseFormatError
from llm_threads.messages import Message
from llm_threads.streaming import StreamOptions, aprompt

if TYPE_CHECKING:
    from llm_threads.hooks import Hooks
    from llm_threads.session import Session

logger = logging.getLogger(__name__)

T = TypeVar("T")

Schema = Union[type[BaseModel], dict[str, Any]]

JSON_RESPONSE_FORMAT = {"type": "json_object"}


@dataclass(frozen=True)
class StructuredResult(Generic[T]):
    """A validated value plus the raw text it was parsed from.

    ``source`` is the driver output the text came from (a final Message for
    the streaming driver, a CompletionResult for the completion driver).
    """

    value: T
    raw: str
    source: Any = field(default=None, repr=False, compare=False)

    def __iter__(self) -> Iterator[Any]:
        yield self.value
        yield self.raw


def strip_fences(content: str) -> str:
    """Strip markdown code fences from model output."""
    content = content.strip()
    content = re.sub(r"^```(?:json|JSON)?\s*\n?", "", content)
    content = re.sub(r"\n?\s*```\s*$", "", content)
    return content.strip()


def schema_json(schema: Schema) -> dict[str, Any]:
    """JSON Schema for a pydantic model class or a schema dict."""
    if isinstance(schema, dict):
        return schema
    return schema.model_json_schema()


def schema_description(schema: Schema) -> str:
    """Textual schema description embeddable in a prompt."""
    return _json.dumps(schema_json(schema))


def parse_structured(text: str, schema: Schema) -> Any:
    """Parse ``text`` as JSON and validate it against ``schema``.

    A ``{"$schema": ..., "properties": {...}}`` envelope (the model echoing
    the schema back around its answer) is unwrapped to ``properties`` first.

    Raises:
        ResponseFormatError: Not JSON, or not valid against the schema.
    """
    if not text or not text.strip():
        raise ResponseFormatError("Invalid response (empty content)", raw=text or "")
    try:
        parsed = _json.loads(strip_fences(text))
    except _json.JSONDecodeError as exc:
        raise ResponseFormatError(
            f"Failed to parse response: {exc}, json: '{text}'", raw=text, cause=exc
        ) from exc

    if isinstance(parsed, dict) and "$schema" in parsed and isinstance(parsed.get("properties"), dict):
        logger.debug("Unwrapping schema envelope from model output")
        parsed = parsed["properties"]

    if isinstance(schema, dict):
        try:
            jsonschema.validate(parsed, schema)
        except jsonschema.ValidationError as exc:
            raise ResponseFormatError(
                f"Failed to validate response: {exc.message}, json: '{text}'", raw=text, cause=exc
            ) from exc
        return parsed

    try:
        return schema.model_validate(parsed)
    except ValidationError as exc:
        raise ResponseFormatError(
            f"Failed to validate response: {exc}, json: '{text}'", raw=text, cause=exc
        ) from exc


def json_instructions(schema: Schema, base: str | None = None) -> str:
    """``base`` followed by the instruction to answer in schema-conforming JSON."""
    prefix = f"{base}\n\n" if base else ""
    return (
        f"{prefix}Output JSON must conform to the following JsonSchema7:\n"
        f"{schema_description(schema)}\n\n"
    )


def json_completion_options(options: CompletionOptions, schema: Schema) -> CompletionOptions:
    """Completion options asking for one schema-conforming JSON object."""
    prompt = (
        "Output JSON must be single object (only one JSON object) conforming to the "
        f"following JsonSchema7:\n{schema_description(schema)}\n\n"
    )
    if options.prompt:
        prompt += f"{options.prompt}\n\n"
    return options.replace(
        prompt=prompt,
        extra={**options.extra, "response_format": JSON_RESPONSE_FORMAT},
    )


async def aprompt_json(
    session: Session,
    options: StreamOptions,
    schema: Schema,
    *,
    hooks: Hooks | None = None,
) -> StructuredResult[Any]:
    """Streamed prompt whose final answer must parse against ``schema``.

    No retry here: a bad answer raises ResponseFormatError for the retry loop
    to feed back into the session.
    """
    run = dataclasses.replace(
        options.run,
        response_format=JSON_RESPONSE_FORMAT,
        additional_instructions=json_instructions(schema, options.run.additional_instructions),
    )
    message = await aprompt(session, dataclasses.replace(options, run=run), hooks=hooks)
    value = parse_structured(message.text, schema)
    return StructuredResult(value=value, raw=message.text, source=message)


async def acomplete_json(
    options: CompletionOptions,
    schema: Schema,
    actions: ActionRegistry | None = None,
    *,
    config: ClientConfig | None = None,
    hooks: Hooks | None = None,
    format_retries: int = 1,
) -> StructuredResult[Any]:
    """Completion whose final answer must parse against ``schema``.

    On a format failure the error is appended to the local conversation and
    the completion is attempted again, ``format_retries`` times.

    Raises:
        ResponseFormatError: Still malformed after the reformulated attempts.
    """
    return await acomplete_parsed(
        json_completion_options(options, schema),
        schema,
        actions,
        config=config,
        hooks=hooks,
        format_retries=format_retries,
    )


async def acomplete_parsed(
    options: CompletionOptions,
    schema: Schema,
    actions: ActionRegistry | None = None,
    *,
    config: ClientConfig | None = None,
    hooks: Hooks | None = None,
    format_retries: int = 1,
) -> StructuredResult[Any]:
    """:func:`acomplete_json` for options that already ask for JSON.

    The final ResponseFormatError carries the failing conversation in
    ``messages``.
    """
    current = options
    for attempt in range(format_retries + 1):
        result = await acomplete_with_actions(current, actions, config=config, hooks=hooks)
        try:
            value = parse_structured(result.content, schema)
        except ResponseFormatError as exc:
            if attempt >= format_retries:
                exc.messages = result.messages
                raise
            logger.info("acomplete_parsed reformulating after format failure: %s", exc)
            current = current.replace(
                messages=[
                    *result.messages,
                    Message.user(f"Your latest reply contains following error:\n`{exc}`"),
                ],
                prompt=None,
            )
            continue
        return StructuredResult(value=value, raw=result.content, source=result)
    raise RuntimeError("acomplete_parsed exhausted without returning")
