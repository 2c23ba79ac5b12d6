"""Candidate ranking: sample several answers, let the model order them.

The structured prompt runs independently on ``choices`` forks of the base
session. The candidates are then shown to the model under the labels
``A``, ``B``, ... on one more fork, and it answers with the labels ordered
best to worst. Every candidate comes back exactly once.

Usage::

    ranked = await aprompt_with_pick_all(session, options, Color, choices=3)
    best = await aprompt_with_pick(session, options, Color, choices=3)
"""

from __future__ import annotations

import asyncio
import contextlib
import dataclasses
import json
import logging
import string
from typing import TYPE_CHECKING, Any, Callable, Mapping, Sequence

from pydantic import BaseModel, ConfigDict, Field

from llm_threads.execution_kernel import run_sync
from llm_threads.prompts import render_builtin
from llm_threads.retry import Validator, aprompt_with_retry
from llm_threads.streaming import StreamOptions
from llm_threads.structured import Schema, StructuredResult

if TYPE_CHECKING:
    from llm_threads.hooks import Hooks
    from llm_threads.session import Session

logger = logging.getLogger(__name__)

LABELS = string.ascii_uppercase
MAX_CHOICES = len(LABELS)


class RankingResponse(BaseModel):
    """The model's ordering of the candidate labels, best first."""

    model_config = ConfigDict(populate_by_name=True)

    ordered_labels: list[str] = Field(alias="orderedLabels")


def labels_for(count: int) -> list[str]:
    return list(LABELS[:count])


def ranking_validator(labels: Sequence[str]) -> Callable[[RankingResponse], bool]:
    """Validator accepting only a permutation of ``labels``."""
    expected = list(labels)
    listing = ", ".join(f"'{label}'" for label in expected)

    def _check(response: RankingResponse) -> bool:
        ordered = response.ordered_labels
        if len(ordered) != len(expected):
            raise ValueError(
                f"Invalid number of options {len(ordered)}. Please sort all options [{listing}]"
            )
        unknown = [label for label in ordered if label not in expected]
        if unknown:
            raise ValueError(f"Unknown options {unknown}. Please sort only options [{listing}]")
        if len(set(ordered)) != len(ordered):
            raise ValueError("Duplicate options")
        return True

    return _check


def _candidate_json(value: Any) -> str:
    if isinstance(value, BaseModel):
        return value.model_dump_json(by_alias=True)
    return json.dumps(value)


def _joined(*parts: str | None) -> str:
    return " ".join(p for p in parts if p)


def _check_choices(choices: int, max_concurrent: int | None) -> None:
    if choices < 1 or choices > MAX_CHOICES:
        raise ValueError(f"choices must be between 1 and {MAX_CHOICES}, got {choices}")
    if max_concurrent is not None and max_concurrent < 1:
        raise ValueError(f"max_concurrent must be at least 1, got {max_concurrent}")


async def _rank(
    session: Session,
    options: StreamOptions,
    candidates: list[StructuredResult[Any]],
    *,
    pick_options: Mapping[str, Any] | None,
    max_retries: int | None,
    hooks: Hooks | None,
) -> list[StructuredResult[Any]]:
    labels = labels_for(len(candidates))
    overrides = dict(pick_options or {})
    pick_instructions = _joined(
        overrides.pop("instructions", None), overrides.pop("additional_instructions", None)
    )
    system, user = render_builtin(
        "ranking",
        instructions=_joined(options.run.instructions, options.run.additional_instructions),
        pick_instructions=pick_instructions,
        options=[
            {"label": label, "content": _candidate_json(c.value)}
            for label, c in zip(labels, candidates)
        ],
        labels=labels,
    )
    run = dataclasses.replace(
        options.run.merged(**overrides),
        instructions=system["content"],
        additional_instructions=None,
    )
    fork = await session.clone()
    # The ranker sees the same request the candidates answered.
    if options.message is not None:
        await fork.append_message(options.message)
    logger.debug("Ranking %d candidates on thread %s", len(candidates), fork.thread_id)
    ranking = await aprompt_with_retry(
        fork,
        StreamOptions(run=run, message=user, actions=options.actions),
        RankingResponse,
        validator=ranking_validator(labels),
        max_retries=max_retries,
        hooks=hooks,
    )
    return [candidates[labels.index(label)] for label in ranking.value.ordered_labels]


async def aprompt_with_pick_all(
    session: Session,
    options: StreamOptions,
    schema: Schema,
    *,
    choices: int,
    pick_options: Mapping[str, Any] | None = None,
    validator: Validator | None = None,
    max_retries: int | None = None,
    max_concurrent: int | None = None,
    hooks: Hooks | None = None,
) -> list[StructuredResult[Any]]:
    """Generate ``choices`` candidates and return them ordered best to worst.

    Args:
        session: Base session. It is forked, never mutated.
        options: Prompt for each candidate (the message is appended to each fork).
        schema: Schema every candidate must satisfy.
        choices: Number of candidates, 1 to 26.
        pick_options: RunOptions field overrides for the ranking turn.
            ``instructions`` / ``additional_instructions`` are added to the
            ranking prompt instead of replacing it.
        validator: Semantic validator applied to each candidate.
        max_retries: Corrective retries per candidate and for the ranking turn.
        max_concurrent: Bound on candidates generated at once.

    Raises:
        ValueError: ``choices`` out of range.
        RetryExhaustedError: A candidate or the ranking never validated.
    """
    _check_choices(choices, max_concurrent)
    limiter = asyncio.Semaphore(max_concurrent) if max_concurrent else None

    async def _candidate(index: int) -> StructuredResult[Any]:
        async with limiter or contextlib.nullcontext():
            fork = await session.clone()
            logger.debug("Generating candidate %d/%d", index + 1, choices)
            return await aprompt_with_retry(
                fork,
                options,
                schema,
                validator=validator,
                max_retries=max_retries,
                hooks=hooks,
            )

    candidates = list(await asyncio.gather(*(_candidate(i) for i in range(choices))))
    if len(candidates) == 1:
        return candidates
    return await _rank(
        session,
        options,
        candidates,
        pick_options=pick_options,
        max_retries=max_retries,
        hooks=hooks,
    )


async def aprompt_with_pick(
    session: Session,
    options: StreamOptions,
    schema: Schema,
    *,
    choices: int,
    pick_options: Mapping[str, Any] | None = None,
    validator: Validator | None = None,
    max_retries: int | None = None,
    max_concurrent: int | None = None,
    hooks: Hooks | None = None,
) -> StructuredResult[Any]:
    """The best of ``choices`` candidates."""
    ranked = await aprompt_with_pick_all(
        session,
        options,
        schema,
        choices=choices,
        pick_options=pick_options,
        validator=validator,
        max_retries=max_retries,
        max_concurrent=max_concurrent,
        hooks=hooks,
    )
    return ranked[0]


def prompt_with_pick_all(
    session: Session,
    options: StreamOptions,
    schema: Schema,
    *,
    choices: int,
    pick_options: Mapping[str, Any] | None = None,
    validator: Validator | None = None,
    max_retries: int | None = None,
    max_concurrent: int | None = None,
    hooks: Hooks | None = None,
) -> list[StructuredResult[Any]]:
    """Sync wrapper for :func:`aprompt_with_pick_all`."""
    return run_sync(
        aprompt_with_pick_all(
            session,
            options,
            schema,
            choices=choices,
            pick_options=pick_options,
            validator=validator,
            max_retries=max_retries,
            max_concurrent=max_concurrent,
            hooks=hooks,
        )
    )


def prompt_with_pick(
    session: Session,
    options: StreamOptions,
    schema: Schema,
    *,
    choices: int,
    pick_options: Mapping[str, Any] | None = None,
    validator: Validator | None = None,
    max_retries: int | None = None,
    max_concurrent: int | None = None,
    hooks: Hooks | None = None,
) -> StructuredResult[Any]:
    """Sync wrapper for :func:`aprompt_with_pick`."""
    return run_sync(
        aprompt_with_pick(
            session,
            options,
            schema,
            choices=choices,
            pick_options=pick_options,
            validator=validator,
            max_retries=max_retries,
            max_concurrent=max_concurrent,
            hooks=hooks,
        )
    )
