"""Push-to-pull adapter: write items on one side, iterate them on the other."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, Generic, TypeVar

from .operators import maybe_await

__all__ = ["WritableIterable"]

T = TypeVar("T")


class _End:
    def __init__(self, error: BaseException | None) -> None:
        self.error = error


class WritableIterable(Generic[T]):
    """Invert an async iterable: ``write()`` on one side, ``async for`` on the other.

    The writing side must call ``close()`` when done. ``close(error)``
    makes the reading side raise ``error`` after the items already written.
    A write waits while an earlier item is still unread.

    Example:
        writable = WritableIterable[int]()

        async def produce():
            for i in range(3):
                await writable.write(i)
            await writable.close()

        asyncio.create_task(produce())
        async for item in writable:
            ...
    """

    def __init__(self, on_close: Callable[[], Awaitable[Any] | Any] | None = None) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self._on_close = on_close

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def write(self, item: T) -> None:
        """Queue an item.

        Raises:
            RuntimeError: If already closed
        """
        if self._closed:
            raise RuntimeError("writable is already closed")
        self._queue.put_nowait(item)
        if self._queue.qsize() > 1:
            await self._queue.join()

    async def close(self, error: BaseException | None = None) -> None:
        """Close the iterable; only the first call (and its error) counts."""
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_End(error))
        if self._on_close is not None:
            await maybe_await(self._on_close())

    async def __aiter__(self) -> AsyncIterator[T]:
        try:
            while True:
                # not restartable: the end marker was already consumed
                if self._closed and self._queue.empty():
                    return
                entry = await self._queue.get()
                self._queue.task_done()
                if isinstance(entry, _End):
                    if entry.error is not None:
                        raise entry.error
                    return
                yield entry
        finally:
            # a reader that stops early must not leave writers blocked
            self._closed = True
            while not self._queue.empty():
                self._queue.get_nowait()
                self._queue.task_done()
