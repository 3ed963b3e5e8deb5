"""Lazy, pull-based async sequences with chainable operators.

procstream sequence module v0.1.0

This module provides:
- Enumerable: async iterable wrapper with map/filter/take/tee/... operators
- BytesEnumerable: byte-chunk sequences with line splitting and decoding
- ProcessEnumerable: the stdout of a child process, spawned on first pull
- CachedEnumerable: pulls its upstream once and replays it to every reader
- sequence / run / range_seq factories

Operators never pull before they are pulled themselves. An Enumerable is
not restartable: iterating it twice continues the same underlying
iterator. Closing an Enumerable (``aclose()`` or ``async with``) closes
every stage upstream of it, including processes.
"""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import AsyncIterable, AsyncIterator, Callable, Iterable, Mapping
from typing import TYPE_CHECKING, Any, Generic, TypeVar, overload

import anyio

from ..runtime.group import ProcessGroup, TeardownArena
from ..runtime.handles import ExitStatus, ProcessHandle
from ..runtime.process_runner import ProcessSpec
from . import lines as _lines
from .concurrent import concurrent_map, concurrent_unordered_map
from .operators import (
    MaybeAwaitable,
    closing_iter,
    concat_items,
    drop_items,
    enumerate_items,
    filter_items,
    flat_map_items,
    flatten_items,
    iterate,
    map_items,
    maybe_await,
    recover_items,
    take_items,
)
from .tee import tee_items
from .writable import WritableIterable

if TYPE_CHECKING:
    from ..handlers.stage import ErrorOverride, PipelineStage
    from ..handlers.stderr import StderrStrategy

__all__ = [
    "Enumerable",
    "BytesEnumerable",
    "ProcessEnumerable",
    "CachedEnumerable",
    "sequence",
    "run",
    "range_seq",
]

logger = logging.getLogger(__name__)

T = TypeVar("T")
U = TypeVar("U")

_EMPTY = object()


class Enumerable(Generic[T]):
    """Async iterable wrapper with chainable lazy operators.

    Example:
        total = await (
            sequence(range(10))
            .filter(lambda n: n % 2 == 0)
            .map(lambda n: n * n)
            .reduce(0, lambda acc, n: acc + n)
        )
    """

    def __init__(self, source: AsyncIterable[T] | None = None) -> None:
        self._source = source
        self._iterator: AsyncIterator[T] | None = None
        self._closed = False

    def _ensure_iterator(self) -> AsyncIterator[T]:
        if self._iterator is None:
            self._iterator = aiter(self._source) if self._source is not None else iterate(None)
        return self._iterator

    def __aiter__(self) -> "Enumerable[T]":
        return self

    async def __anext__(self) -> T:
        if self._closed:
            raise StopAsyncIteration
        return await anext(self._ensure_iterator())

    async def aclose(self) -> None:
        """Stop iterating and close everything upstream; idempotent."""
        if self._closed:
            return
        self._closed = True
        target: Any = self._iterator if self._iterator is not None else self._source
        aclose = getattr(target, "aclose", None)
        if aclose is not None:
            await aclose()

    async def __aenter__(self) -> "Enumerable[T]":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # ------------------------------------------------------------------
    # Operators
    # ------------------------------------------------------------------

    def transform(self, fn: Callable[[AsyncIterable[T]], AsyncIterable[U]]) -> "Enumerable[U]":
        """Apply a whole-sequence transformer such as ``lines.to_bytes``."""
        return Enumerable(fn(self))

    def map(self, fn: Callable[[T], MaybeAwaitable[U]]) -> "Enumerable[U]":
        return Enumerable(map_items(self, fn))

    def filter(self, fn: Callable[[T], MaybeAwaitable[bool]]) -> "Enumerable[T]":
        return Enumerable(filter_items(self, fn))

    def filter_not(self, fn: Callable[[T], MaybeAwaitable[bool]]) -> "Enumerable[T]":
        return Enumerable(filter_items(self, fn, keep=False))

    def flat_map(
        self,
        fn: Callable[[T], MaybeAwaitable[Iterable[U] | AsyncIterable[U]]],
    ) -> "Enumerable[U]":
        return Enumerable(flat_map_items(self, fn))

    def flatten(self) -> "Enumerable[Any]":
        return Enumerable(flatten_items(self))

    def take(self, n: int = 1) -> "Enumerable[T]":
        """The first ``n`` items; the upstream is pulled at most ``n`` times."""
        return Enumerable(take_items(self, n))

    def drop(self, n: int = 1) -> "Enumerable[T]":
        return Enumerable(drop_items(self, n))

    def concat(self, other: Iterable[T] | AsyncIterable[T]) -> "Enumerable[T]":
        return Enumerable(concat_items(self, other))

    def enum(self) -> "Enumerable[tuple[T, int]]":
        """Pair each item with its index: ``(item, index)``."""
        return Enumerable(enumerate_items(self))

    def tee(self, n: int = 2) -> "list[Enumerable[T]]":
        """Split into ``n`` independently consumable branches.

        Every branch must be fully consumed or closed; otherwise the
        slowest branch buffers without bound.
        """
        return [self._branch(branch) for branch in tee_items(self, n)]

    @classmethod
    def _branch(cls, source: AsyncIterable[Any]) -> "Enumerable[Any]":
        return Enumerable(source)

    def recover(
        self,
        handler: Callable[[Exception], MaybeAwaitable[Iterable[T] | AsyncIterable[T] | None]],
    ) -> "Enumerable[T]":
        """Opt-in error override for everything upstream.

        The handler may raise (rethrow or replace the error), return None
        to end the sequence quietly, or return replacement items.
        """
        return Enumerable(recover_items(self, handler))

    def cache(self) -> "CachedEnumerable[T]":
        return CachedEnumerable(self)

    def concurrent_map(
        self,
        fn: Callable[[T], MaybeAwaitable[U]],
        concurrency: float | None = None,
    ) -> "Enumerable[U]":
        """Map with up to ``concurrency`` workers in flight; input order is kept."""
        return Enumerable(concurrent_map(self, fn, concurrency))

    def concurrent_unordered_map(
        self,
        fn: Callable[[T], MaybeAwaitable[U]],
        concurrency: float | None = None,
    ) -> "Enumerable[U]":
        """Map with up to ``concurrency`` workers in flight; results in completion order."""
        return Enumerable(concurrent_unordered_map(self, fn, concurrency))

    def to_bytes(self) -> "BytesEnumerable":
        """Convert str (as LF-terminated lines), bytes, or lists of them into bytes."""
        return BytesEnumerable(_lines.to_bytes(self))

    def run(
        self,
        *cmd: Any,
        cwd: str | os.PathLike[str] | None = None,
        env: Mapping[str, str] | None = None,
        stderr: "StderrStrategy | None" = None,
        on_error: "ErrorOverride | None" = None,
        group: ProcessGroup | None = None,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> "ProcessEnumerable":
        """Pipe this sequence into the stdin of a new process."""
        return ProcessEnumerable(
            _make_spec(cmd, cwd, env),
            upstream=self,
            stderr=stderr,
            on_error=on_error,
            group=group,
            cancel_scope=cancel_scope,
        )

    def write_to(self, writer: WritableIterable[T]) -> "asyncio.Task[None]":
        """Pump every item into ``writer`` from a background task, then close it.

        A failure closes the writer with that error.
        """

        async def pump() -> None:
            try:
                async with closing_iter(self) as items:
                    async for item in items:
                        if writer.is_closed:
                            break
                        await writer.write(item)
                await writer.close()
            except Exception as e:
                await writer.close(e)

        return asyncio.create_task(pump())

    # ------------------------------------------------------------------
    # Terminal operations
    # ------------------------------------------------------------------

    async def reduce(self, zero: U, fn: Callable[[U, T], MaybeAwaitable[U]]) -> U:
        accumulator = zero
        async with closing_iter(self) as items:
            async for item in items:
                accumulator = await maybe_await(fn(accumulator, item))
        return accumulator

    async def for_each(self, fn: Callable[[T], MaybeAwaitable[Any]]) -> None:
        async with closing_iter(self) as items:
            async for item in items:
                await maybe_await(fn(item))

    async def collect(self) -> list[T]:
        async with closing_iter(self) as items:
            return [item async for item in items]

    async def run_all(self) -> None:
        """Drive the sequence to the end, discarding items."""
        async with closing_iter(self) as items:
            async for _ in items:
                pass

    async def first(self) -> T:
        """The first item; the rest of the sequence is closed.

        Raises:
            LookupError: If the sequence is empty
        """
        item: Any = _EMPTY
        async with closing_iter(self.take(1)) as items:
            async for value in items:
                item = value
        if item is _EMPTY:
            raise LookupError("sequence is empty")
        return item

    async def count(self) -> int:
        return await self.reduce(0, lambda n, _: n + 1)


class BytesEnumerable(Enumerable[bytes]):
    """Sequence of byte chunks."""

    @classmethod
    def _branch(cls, source: AsyncIterable[Any]) -> "Enumerable[Any]":
        return BytesEnumerable(source)

    @property
    def lines(self) -> Enumerable[str]:
        """UTF-8 lines without terminators (LF or CRLF)."""
        return Enumerable(_lines.to_lines(self))

    @property
    def chunked_lines(self) -> Enumerable[list[str]]:
        """Lines grouped by the chunk that completed them."""
        return Enumerable(_lines.to_chunked_lines(self))

    @property
    def byte_lines(self) -> Enumerable[bytes]:
        return Enumerable(_lines.split_lines(self))

    def gunzip(self) -> "BytesEnumerable":
        return BytesEnumerable(_lines.gunzip(self))

    def buffer(self, size: int) -> "BytesEnumerable":
        return BytesEnumerable(_lines.buffer(self, size))

    def decode(self, encoding: str = "utf-8") -> Enumerable[str]:
        """Decoded text chunks (not split into lines)."""
        return Enumerable(_lines.decode_text(self, encoding))

    async def read(self) -> bytes:
        """All bytes, joined."""
        return b"".join(await self.collect())

    async def text(self, encoding: str = "utf-8") -> str:
        """All output decoded as one string."""
        return "".join(await self.decode(encoding).collect())


class ProcessEnumerable(BytesEnumerable):
    """Stdout of a child process as a byte sequence.

    The process is spawned on the first pull (or on ``start()``). When an
    upstream sequence is given, a feeder task writes it into stdin
    concurrently with stdout being consumed. Once stdout ends the exit is
    classified and any error is raised to the consumer; see
    ``procstream.handlers.stage``.

    Not restartable: after the process is consumed, iterating again yields
    nothing and never re-raises an error already delivered.

    With a ``cancel_scope``, streaming stops at the next chunk once the
    scope is cancelled and the process is released.
    """

    def __init__(
        self,
        spec: ProcessSpec,
        *,
        upstream: AsyncIterable[Any] | Iterable[Any] | None = None,
        stderr: "StderrStrategy | None" = None,
        on_error: "ErrorOverride | None" = None,
        group: ProcessGroup | None = None,
        cancel_scope: anyio.CancelScope | None = None,
    ) -> None:
        super().__init__(None)
        self.spec = spec
        self._upstream = upstream
        self._stderr = stderr
        self._on_error = on_error
        self._group = group
        self._cancel_scope = cancel_scope
        self._stage: PipelineStage | None = None
        self._start_lock = asyncio.Lock()

    @property
    def handle(self) -> ProcessHandle | None:
        return self._stage.handle if self._stage is not None else None

    @property
    def pid(self) -> int | None:
        return self._stage.handle.pid if self._stage is not None else None

    async def start(self) -> ProcessHandle:
        """Spawn the process (once) and start feeding its stdin."""
        from ..handlers.inputs import feed_stdin
        from ..handlers.stage import PipelineStage

        async with self._start_lock:
            if self._stage is None:
                if self._closed:
                    raise RuntimeError("process sequence is closed")
                group = self._group or TeardownArena.process_wide().default_group()
                handle = await group.spawn(self.spec)
                input_done = None
                if self._upstream is not None:
                    input_done = asyncio.create_task(feed_stdin(self._upstream, handle.stdin))
                self._stage = PipelineStage(
                    handle,
                    input_done,
                    stderr_strategy=self._stderr,
                    on_error=self._on_error,
                )
                logger.debug(
                    f"Started stage pid={handle.pid} group={group.id} "
                    f"fed={input_done is not None}"
                )
            return self._stage.handle

    async def status(self) -> ExitStatus:
        """Exit status; waits for the process (stdout must be consumed elsewhere)."""
        handle = await self.start()
        return await handle.wait()

    def _ensure_iterator(self) -> AsyncIterator[bytes]:
        if self._iterator is None:
            self._iterator = self._stream()
        return self._iterator

    async def _stream(self) -> AsyncIterator[bytes]:
        await self.start()
        if self._stage is None:
            raise RuntimeError("process sequence has no stage")
        async with closing_iter(self._stage.stream(cancel_scope=self._cancel_scope)) as chunks:
            async for chunk in chunks:
                yield chunk

    async def aclose(self) -> None:
        if self._closed:
            return
        await super().aclose()
        if self._stage is not None:
            await self._stage.aclose()
        else:
            # never started: release the upstream we would have fed
            aclose = getattr(self._upstream, "aclose", None)
            if aclose is not None:
                await aclose()

    def __repr__(self) -> str:
        return f"ProcessEnumerable(argv={list(self.spec.argv)!r}, pid={self.pid})"


class CachedEnumerable(Generic[T]):
    """Pulls its upstream at most once per item and replays it to every reader.

    Each ``async for`` (or ``seq()``) starts again from the first item.
    A failure is cached and re-raised to every reader that reaches it.
    """

    def __init__(self, source: AsyncIterable[T]) -> None:
        self._source = source
        self._iterator: AsyncIterator[T] | None = None
        self._items: list[T] = []
        self._done = False
        self._error: Exception | None = None
        self._lock = asyncio.Lock()

    def seq(self) -> Enumerable[T]:
        return Enumerable(self._replay())

    def __aiter__(self) -> Enumerable[T]:
        return self.seq()

    async def _pull(self) -> None:
        if self._iterator is None:
            self._iterator = aiter(self._source)
        try:
            self._items.append(await anext(self._iterator))
        except StopAsyncIteration:
            self._done = True
        except Exception as e:
            self._error = e

    async def _replay(self) -> AsyncIterator[T]:
        index = 0
        while True:
            if index < len(self._items):
                yield self._items[index]
                index += 1
                continue
            if self._error is not None:
                raise self._error
            if self._done:
                return
            async with self._lock:
                # another reader may have pulled while we waited
                if index == len(self._items) and not self._done and self._error is None:
                    await self._pull()

    async def aclose(self) -> None:
        """Close the upstream; items already cached remain readable."""
        self._done = True
        aclose = getattr(self._iterator or self._source, "aclose", None)
        if aclose is not None:
            await aclose()


def _make_spec(
    cmd: tuple[Any, ...],
    cwd: str | os.PathLike[str] | None,
    env: Mapping[str, str] | None,
) -> ProcessSpec:
    if len(cmd) == 1 and isinstance(cmd[0], (list, tuple)):
        cmd = tuple(cmd[0])
    return ProcessSpec(list(cmd), cwd=cwd, env=env)


@overload
def sequence(source: None = None) -> Enumerable[Any]: ...


@overload
def sequence(source: Iterable[T] | AsyncIterable[T]) -> Enumerable[T]: ...


def sequence(source: Iterable[T] | AsyncIterable[T] | None = None) -> Enumerable[Any]:
    """Wrap any sync or async iterable (None = empty) as an Enumerable.

    An existing Enumerable is returned unchanged.
    """
    if isinstance(source, Enumerable):
        return source
    if source is not None and isinstance(source, AsyncIterable):
        return Enumerable(source)
    return Enumerable(iterate(source))


def run(
    *cmd: Any,
    cwd: str | os.PathLike[str] | None = None,
    env: Mapping[str, str] | None = None,
    stderr: "StderrStrategy | None" = None,
    on_error: "ErrorOverride | None" = None,
    group: ProcessGroup | None = None,
    cancel_scope: anyio.CancelScope | None = None,
) -> ProcessEnumerable:
    """Run a command; its stdout is returned as a lazily started byte sequence.

    Example:
        async for line in run("ls", "-1").lines:
            print(line)
    """
    return ProcessEnumerable(
        _make_spec(cmd, cwd, env),
        stderr=stderr,
        on_error=on_error,
        group=group,
        cancel_scope=cancel_scope,
    )


def range_seq(
    *,
    to: int | None = None,
    until: int | None = None,
    start: int = 0,
    step: int = 1,
) -> Enumerable[int]:
    """Integers from ``start`` up to ``to`` (exclusive) or ``until`` (inclusive)."""
    if (to is None) == (until is None):
        raise ValueError("exactly one of 'to' or 'until' is required")
    if step == 0:
        raise ValueError("step must not be zero")
    if until is not None:
        return sequence(range(start, until + (1 if step > 0 else -1), step))
    return sequence(range(start, to, step))
