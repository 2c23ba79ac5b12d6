"""Observability hooks fired by the drivers and the retry loop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable


@dataclass
class Hooks:
    """Callbacks for logging, metrics or tracing. Leave unused ones as None.

    Example::

        hooks = Hooks(
            on_event=lambda event: print(event.event),
            on_error=lambda err, attempt: print(f"Attempt {attempt} rejected: {err}"),
        )
        result = await aprompt_with_retry(session, options, Color, hooks=hooks)

    Attributes:
        before_call: ``(model, messages, params) -> None``. Fired before each
            completion request and before each run is started. For runs,
            ``model`` is the run's model or assistant id.
        after_call: ``(message) -> None``. Fired with each completion
            response message and each completed stream message.
        on_error: ``(error, attempt) -> None``. Fired for every failed
            attempt of the retry-with-validation loop.
        on_event: ``(StreamEvent) -> None``. Fired for every stream event
            before the caller sees it.
    """

    before_call: Callable[[str, list[dict[str, Any]], dict[str, Any]], None] | None = None
    after_call: Callable[[Any], None] | None = None
    on_error: Callable[[Exception, int], None] | None = None
    on_event: Callable[[Any], None] | None = None
