"""Bounded-concurrency mapping.

procstream sequence module v0.1.0

This module provides:
- concurrent_map: results in input order
- concurrent_unordered_map: results in completion order

Both keep exactly ``concurrency`` workers in flight while enough input
remains. A freed slot is refilled before the result that freed it is
handed to the consumer.

Failure semantics:
- The first failure is raised to the consumer (at its turn when ordered,
  immediately when unordered) and no new workers are started
- Workers already in flight run to completion; their outcomes are discarded
- Closing or cancelling the consumer cancels the workers in flight
"""

from __future__ import annotations

import asyncio
import logging
import math
from collections import deque
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable
from typing import Any, TypeVar

from pydantic import BaseModel, ConfigDict, PositiveInt, field_validator

from ..config import get_config
from .operators import MaybeAwaitable, closing_iter, maybe_await

__all__ = [
    "ConcurrentOptions",
    "concurrent_map",
    "concurrent_unordered_map",
    "resolve_concurrency",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")


class ConcurrentOptions(BaseModel):
    """Options for the concurrent map operators.

    Attributes:
        concurrency: Maximum number of workers in flight (fractions round up)
    """

    model_config = ConfigDict(frozen=True)

    concurrency: PositiveInt

    @field_validator("concurrency", mode="before")
    @classmethod
    def _round_up(cls, value: Any) -> Any:
        if isinstance(value, float) and math.isfinite(value):
            return math.ceil(value)
        return value


def resolve_concurrency(concurrency: float | None = None) -> int:
    """Validate a concurrency limit, defaulting to the configured value.

    Raises:
        ValueError: If the limit is less than 1
    """
    if concurrency is None:
        concurrency = get_config().concurrency
    return ConcurrentOptions(concurrency=concurrency).concurrency


async def _invoke(worker: Callable[[T], MaybeAwaitable[U]], item: T) -> U:
    return await maybe_await(worker(item))


def _discard(task: asyncio.Task[Any]) -> None:
    # retrieve the outcome so asyncio does not report it as never retrieved
    if not task.cancelled() and task.exception() is not None:
        logger.debug(f"Discarded worker failure: {task.exception()!r}")


def _release(tasks: Iterable[asyncio.Task[Any]], failed: bool) -> None:
    for task in tasks:
        if task.done():
            _discard(task)
        elif failed:
            task.add_done_callback(_discard)
        else:
            task.cancel()


async def concurrent_map(
    source: AsyncIterable[T],
    worker: Callable[[T], MaybeAwaitable[U]],
    concurrency: float | None = None,
) -> AsyncIterator[U]:
    """Map ``worker`` over ``source`` with bounded concurrency, preserving input order."""
    limit = resolve_concurrency(concurrency)
    pending: deque[asyncio.Task[U]] = deque()
    failed = False

    async with closing_iter(source) as items:
        exhausted = False

        async def fill() -> None:
            nonlocal exhausted
            while not exhausted and len(pending) < limit:
                try:
                    item = await anext(items)
                except StopAsyncIteration:
                    exhausted = True
                    return
                pending.append(asyncio.create_task(_invoke(worker, item)))

        try:
            await fill()
            while pending:
                # cancelling the consumer here also cancels the awaited worker
                result = await pending.popleft()
                await fill()
                yield result
        except Exception:
            failed = True
            raise
        finally:
            _release(pending, failed)


async def concurrent_unordered_map(
    source: AsyncIterable[T],
    worker: Callable[[T], MaybeAwaitable[U]],
    concurrency: float | None = None,
) -> AsyncIterator[U]:
    """Map ``worker`` over ``source`` with bounded concurrency, in completion order."""
    limit = resolve_concurrency(concurrency)
    running: set[asyncio.Task[U]] = set()
    completed: asyncio.Queue[asyncio.Task[U]] = asyncio.Queue()
    failed = False

    async with closing_iter(source) as items:
        exhausted = False

        async def fill() -> None:
            nonlocal exhausted
            while not exhausted and len(running) < limit:
                try:
                    item = await anext(items)
                except StopAsyncIteration:
                    exhausted = True
                    return
                task = asyncio.create_task(_invoke(worker, item))
                running.add(task)
                task.add_done_callback(completed.put_nowait)

        try:
            await fill()
            while running:
                task = await completed.get()
                running.discard(task)
                result = task.result()
                await fill()
                yield result
        except Exception:
            failed = True
            raise
        finally:
            _release(running, failed)
