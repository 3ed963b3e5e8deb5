"""Async-generator operators over async iterables.

Each operator pulls from its upstream only when it is itself pulled, and
closes its upstream when it finishes, fails or is closed early.
Callbacks may be plain functions or coroutine functions.
"""

from __future__ import annotations

import contextlib
import inspect
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable, Iterable
from typing import Any, TypeVar, Union

__all__ = [
    "closing_iter",
    "maybe_await",
    "map_items",
    "filter_items",
    "flat_map_items",
    "flatten_items",
    "take_items",
    "drop_items",
    "concat_items",
    "enumerate_items",
    "recover_items",
    "iterate",
]

T = TypeVar("T")
U = TypeVar("U")

MaybeAwaitable = Union[T, Awaitable[T]]


async def maybe_await(value: MaybeAwaitable[T]) -> T:
    if inspect.isawaitable(value):
        return await value
    return value  # type: ignore[return-value]


@contextlib.asynccontextmanager
async def closing_iter(source: AsyncIterable[T]) -> AsyncIterator[AsyncIterator[T]]:
    """Iterate ``source`` and close its iterator on the way out."""
    iterator = aiter(source)
    try:
        yield iterator
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


async def iterate(source: Iterable[T] | AsyncIterable[T] | None) -> AsyncIterator[T]:
    """Adapt a sync or async iterable (None = empty) into an async iterator."""
    if source is None:
        return
    if isinstance(source, AsyncIterable):
        async with closing_iter(source) as items:
            async for item in items:
                yield item
    else:
        for item in source:
            yield item


async def map_items(
    source: AsyncIterable[T],
    fn: Callable[[T], MaybeAwaitable[U]],
) -> AsyncIterator[U]:
    async with closing_iter(source) as items:
        async for item in items:
            yield await maybe_await(fn(item))


async def filter_items(
    source: AsyncIterable[T],
    fn: Callable[[T], MaybeAwaitable[bool]],
    keep: bool = True,
) -> AsyncIterator[T]:
    async with closing_iter(source) as items:
        async for item in items:
            if bool(await maybe_await(fn(item))) is keep:
                yield item


async def flatten_items(source: AsyncIterable[Any]) -> AsyncIterator[Any]:
    """Yield the elements of each (sync or async) iterable element."""
    async with closing_iter(source) as items:
        async for item in items:
            async with closing_iter(iterate(item)) as inner:
                async for value in inner:
                    yield value


async def flat_map_items(
    source: AsyncIterable[T],
    fn: Callable[[T], MaybeAwaitable[Iterable[U] | AsyncIterable[U]]],
) -> AsyncIterator[U]:
    async with closing_iter(map_items(source, fn)) as mapped:
        async with closing_iter(flatten_items(mapped)) as items:
            async for item in items:
                yield item


async def take_items(source: AsyncIterable[T], n: int) -> AsyncIterator[T]:
    """Yield the first ``n`` items, pulling upstream at most ``n`` times."""
    if n <= 0:
        return
    count = 0
    async with closing_iter(source) as items:
        async for item in items:
            yield item
            count += 1
            if count >= n:
                return


async def drop_items(source: AsyncIterable[T], n: int) -> AsyncIterator[T]:
    count = 0
    async with closing_iter(source) as items:
        async for item in items:
            if count < n:
                count += 1
                continue
            yield item


async def concat_items(*sources: Iterable[T] | AsyncIterable[T]) -> AsyncIterator[T]:
    for source in sources:
        async with closing_iter(iterate(source)) as items:
            async for item in items:
                yield item


async def enumerate_items(source: AsyncIterable[T], start: int = 0) -> AsyncIterator[tuple[T, int]]:
    """Pair each item with its index, as ``(item, index)``."""
    index = start
    async with closing_iter(source) as items:
        async for item in items:
            yield item, index
            index += 1


async def recover_items(
    source: AsyncIterable[T],
    handler: Callable[[Exception], MaybeAwaitable[Iterable[T] | AsyncIterable[T] | None]],
) -> AsyncIterator[T]:
    """Hand an upstream failure to ``handler``.

    The handler may re-raise (or raise a different error), return None to
    end the sequence quietly, or return replacement items to yield.
    """
    async with closing_iter(source) as items:
        try:
            async for item in items:
                yield item
        except Exception as e:
            replacement = await maybe_await(handler(e))
            if replacement is not None:
                async with closing_iter(iterate(replacement)) as rest:
                    async for item in rest:
                        yield item
