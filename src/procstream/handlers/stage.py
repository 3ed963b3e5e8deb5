"""Output side of a process stage: streaming, exit classification and cleanup.

procstream handlers module v0.1.0

A ``PipelineStage`` owns one spawned process from the moment its stdout
is consumed. It drains stderr concurrently (so the child never blocks on
a full stderr pipe), streams stdout, and once stdout ends it classifies
the result:

1. killed by a signal -> SignalError
2. non-zero exit code -> ExitCodeError (upstream failure attached as cause)
3. success, but the input side failed -> UpstreamError
4. otherwise success

A classified error goes through the optional ``on_error`` override, which
may return (suppress) or raise (replace/rethrow). Cleanup runs on every
exit path, shielded from cancellation.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterable, AsyncIterator, Awaitable, Callable
from typing import Any, Generic, TypeVar

import anyio

from ..errors import PipelineError, TransformError, exit_error
from ..runtime.handles import ProcessHandle, ScopedReader
from ..sequence.lines import to_lines
from ..sequence.operators import closing_iter, maybe_await
from .stderr import StderrStrategy, stderr_to_host

__all__ = ["ErrorOverride", "PipelineStage", "StageIterator"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorOverride = Callable[[PipelineError, Any], "Awaitable[Any] | Any"]


def _retrieve(task: asyncio.Future[Any]) -> BaseException | None:
    if not task.done() or task.cancelled():
        return None
    return task.exception()


class PipelineStage:
    """Drives one spawned process on the consuming side.

    Args:
        handle: The spawned process
        input_done: Task feeding the process's stdin (None = nothing to feed)
        stdout: Reader to stream (default: the process's stdout)
        stderr: Reader to drain (default: the process's stderr)
        stderr_strategy: What to do with stderr lines (default: copy to the host's stderr)
        on_error: Optional error override ``(error, stderr_data)``
    """

    def __init__(
        self,
        handle: ProcessHandle,
        input_done: asyncio.Future[Any] | None = None,
        *,
        stdout: ScopedReader | None = None,
        stderr: ScopedReader | None = None,
        stderr_strategy: StderrStrategy | None = None,
        on_error: ErrorOverride | None = None,
    ) -> None:
        self.handle = handle
        self._stdout = stdout or handle.stdout
        self._input_done = input_done
        self._on_error = on_error
        strategy = stderr_strategy or stderr_to_host
        self._stderr_task: asyncio.Task[Any] = asyncio.create_task(
            strategy(to_lines(stderr or handle.stderr))
        )
        self._released = False
        if input_done is None:
            handle.stdin.close()

    async def stream(
        self, *, cancel_scope: anyio.CancelScope | None = None
    ) -> AsyncIterator[bytes]:
        """Yield stdout chunks, then raise the classified error, if any.

        Args:
            cancel_scope: Stop streaming once this scope is cancelled; the
                process is then released without classifying its exit
        """
        try:
            async with closing_iter(self._stdout) as chunks:
                async for chunk in chunks:
                    if cancel_scope is not None and cancel_scope.cancel_called:
                        logger.debug(f"Stage pid={self.handle.pid} stopped by cancel scope")
                        return
                    yield chunk
            await self.finish()
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        """Release the input task, the process and the stderr task; idempotent."""
        if self._released:
            return
        self._released = True
        await self._safe_cleanup()

    async def finish(self) -> Any:
        """Wait for exit and classify it.

        Returns:
            Whatever the stderr strategy returned

        Raises:
            PipelineError: Unless the stage succeeded or ``on_error`` suppressed it
        """
        status = await self.handle.wait()
        stderr_data = await self._stderr_task
        upstream = await self._input_error()

        tail = stderr_data if isinstance(stderr_data, list) else None
        error = exit_error(status, self.handle.command, stderr_tail=tail, upstream=upstream)
        if error is None:
            return stderr_data

        logger.debug(f"Stage failed pid={self.handle.pid}: {error.message.splitlines()[0]}")
        if self._on_error is None:
            raise error
        await maybe_await(self._on_error(error, stderr_data))
        return stderr_data

    async def _input_error(self) -> PipelineError | None:
        task = self._input_done
        if task is None:
            return None
        if not task.done():
            # the process finished without reading all of its input
            task.cancel()
        await asyncio.wait([task])

        error = _retrieve(task)
        if error is None or isinstance(error, (BrokenPipeError, ConnectionResetError)):
            return None
        if isinstance(error, PipelineError):
            return error
        if isinstance(error, Exception):
            return TransformError(error)
        raise error

    async def _safe_cleanup(self) -> None:
        """Cleanup shielded from cancellation."""
        try:
            await asyncio.shield(self._do_cleanup())
        except asyncio.CancelledError:
            self._force_cleanup()
            raise

    async def _do_cleanup(self) -> None:
        task = self._input_done
        if task is not None:
            if not task.done():
                task.cancel()
            await asyncio.wait([task])
            _retrieve(task)

        if self.handle.is_running:
            await self.handle.aclose()
        else:
            self.handle.close()

        if not self._stderr_task.done():
            self._stderr_task.cancel()
        await asyncio.wait([self._stderr_task])
        error = _retrieve(self._stderr_task)
        if error is not None:
            logger.debug(f"Stderr strategy failed pid={self.handle.pid}: {error!r}")

    def _force_cleanup(self) -> None:
        if self._input_done is not None:
            self._input_done.cancel()
        self._stderr_task.cancel()
        self.handle.close()


class StageIterator(Generic[T]):
    """Iterator over a stage's output that releases the stage when closed.

    Closing an async generator that was never started does not run its
    cleanup, so a stage handed out as a sequence is released here even
    if nothing was ever pulled from it.
    """

    def __init__(self, source: AsyncIterable[T], stage: PipelineStage) -> None:
        self._iterator = aiter(source)
        self._stage = stage

    def __aiter__(self) -> "StageIterator[T]":
        return self

    def __anext__(self) -> Awaitable[T]:
        return anext(self._iterator)

    async def aclose(self) -> None:
        try:
            aclose = getattr(self._iterator, "aclose", None)
            if aclose is not None:
                await aclose()
        finally:
            await self._stage.aclose()
