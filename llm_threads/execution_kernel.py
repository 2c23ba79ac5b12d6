"""Shared retry execution primitive and backoff strategies for remote calls."""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import random
from typing import Any, Awaitable, Callable, Coroutine, TypeVar

T = TypeVar("T")


def exponential_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter, capped at *max_delay*."""
    delay = base_delay * (2 ** attempt)
    jitter = random.uniform(0.5, 1.5)
    return min(delay * jitter, max_delay)


def fixed_backoff(attempt: int, base_delay: float = 1.0, max_delay: float = 30.0) -> float:
    """Fixed delay (no escalation), capped at *max_delay*."""
    return min(base_delay, max_delay)


async def run_async_with_retry(
    *,
    caller: str,
    max_retries: int,
    invoke: Callable[[int], Awaitable[T]],
    should_retry: Callable[[Exception], bool],
    logger: logging.Logger,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    backoff: Callable[[int, float, float], float] | None = None,
    on_error: Callable[[Exception, int], None] | None = None,
    on_retry: Callable[[int, Exception, float], None] | None = None,
) -> T:
    """Execute async attempts with shared retry behavior.

    ``invoke`` receives the zero-based attempt number. The last exception is
    re-raised unchanged once ``max_retries`` retries are spent or
    ``should_retry`` declines.
    """
    backoff_fn = backoff or exponential_backoff
    for attempt in range(max_retries + 1):
        try:
            result = await invoke(attempt)
        except Exception as exc:
            if on_error is not None:
                on_error(exc, attempt)
            if not should_retry(exc) or attempt >= max_retries:
                raise

            delay = backoff_fn(attempt, base_delay, max_delay)
            if on_retry is not None:
                on_retry(attempt, exc, delay)
            logger.warning(
                "%s attempt %d/%d failed (retrying in %.1fs): %s",
                caller,
                attempt + 1,
                max_retries + 1,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
            continue
        if attempt > 0:
            logger.info("%s succeeded after %d retries", caller, attempt)
        return result

    raise RuntimeError("run_async_with_retry exhausted without returning")


def run_sync(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine to completion from sync code.

    Runs in a new event loop. If called from within a running event loop
    (e.g., Jupyter), uses a thread to avoid nested event loop errors.
    """
    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        loop = None
    if loop and loop.is_running():
        with concurrent.futures.ThreadPoolExecutor(max_workers=1) as pool:
            return pool.submit(asyncio.run, coro).result()
    return asyncio.run(coro)
