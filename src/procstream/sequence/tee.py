"""Split one async iterable into independently paced branches.

Each branch owns a queue. A branch with an empty queue pulls the shared
upstream once (under a lock) and appends the entry to every open branch's
queue. The pull runs in its own task and is awaited through
``asyncio.shield``, so a branch cancelled mid-pull leaves the entry for
the others. End of data and failures are queued the same way, so each
branch observes them in order. The upstream is closed when the last
branch closes; a branch that is never consumed or closed keeps the
upstream alive and its queue grows without bound.
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import AsyncIterable, AsyncIterator, Awaitable
from typing import Any, Generic, TypeVar

__all__ = ["tee_items"]

T = TypeVar("T")


class _End:
    pass


class _Failure:
    def __init__(self, error: BaseException) -> None:
        self.error = error


_END = _End()


class _TeeState(Generic[T]):
    def __init__(self, source: AsyncIterable[T], n: int) -> None:
        self.iterator = aiter(source)
        self.queues: list[deque[Any]] = [deque() for _ in range(n)]
        self.open = [True] * n
        self.lock = asyncio.Lock()
        self.pending: asyncio.Task[Any] | None = None

    async def _pull(self) -> Any:
        try:
            return await anext(self.iterator)
        except StopAsyncIteration:
            return _END
        except Exception as e:
            return _Failure(e)

    async def fill(self) -> None:
        """Pull one entry and queue it for every open branch."""
        if self.pending is None:
            self.pending = asyncio.ensure_future(self._pull())
        entry = await asyncio.shield(self.pending)
        self.pending = None
        for index, queue in enumerate(self.queues):
            if self.open[index]:
                queue.append(entry)

    async def release(self, index: int) -> None:
        self.open[index] = False
        self.queues[index].clear()
        if not any(self.open):
            if self.pending is not None:
                pending, self.pending = self.pending, None
                pending.cancel()
                await asyncio.wait([pending])
            aclose = getattr(self.iterator, "aclose", None)
            if aclose is not None:
                await aclose()


async def _branch(state: _TeeState[T], index: int) -> AsyncIterator[T]:
    queue = state.queues[index]
    try:
        while True:
            if not queue:
                async with state.lock:
                    # another branch may have filled our queue while we waited
                    if not queue:
                        await state.fill()
            entry = queue.popleft()
            if entry is _END:
                return
            if isinstance(entry, _Failure):
                raise entry.error
            yield entry
    finally:
        await state.release(index)


class _Branch(Generic[T]):
    """Async iterator for one branch; closing it before the first pull still releases it."""

    def __init__(self, state: _TeeState[T], index: int) -> None:
        self._state = state
        self._index = index
        self._gen = _branch(state, index)

    def __aiter__(self) -> "_Branch[T]":
        return self

    def __anext__(self) -> Awaitable[T]:
        return self._gen.__anext__()

    async def aclose(self) -> None:
        await self._gen.aclose()
        if self._state.open[self._index]:
            await self._state.release(self._index)


def tee_items(source: AsyncIterable[T], n: int = 2) -> list[AsyncIterator[T]]:
    """Return ``n`` branches that each see every item of ``source``."""
    if n < 0:
        raise ValueError("tee count must not be negative")
    state: _TeeState[T] = _TeeState(source, n)
    return [_Branch(state, index) for index in range(n)]
