"""Scoped handles for a spawned process and its standard streams.

procstream runtime module v0.1.0

Every handle here is close-idempotent: the first ``close()`` releases the
underlying OS resource, later calls do nothing. Streams are owned jointly
by the process handle and by whichever stage reads or writes them, so
either side may close first.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict

from .process_runner import ExitAwareProtocol, ProcessRunner, ProcessSpec, kill_process_group

if TYPE_CHECKING:
    from .group import ProcessGroup

__all__ = [
    "ExitStatus",
    "ProcessHandle",
    "ScopedReader",
    "ScopedWriter",
]

logger = logging.getLogger(__name__)

DEFAULT_READ_SIZE = 65536


class ExitStatus(BaseModel):
    """Exit status of a finished process.

    Attributes:
        success: True only for exit code 0
        code: Exit code (128 + signal when killed by a signal)
        signal: Signal number, if the process was killed by one
    """

    model_config = ConfigDict(frozen=True)

    success: bool
    code: int
    signal: int | None = None

    @classmethod
    def from_returncode(cls, returncode: int) -> "ExitStatus":
        # asyncio reports "killed by signal N" as -N
        if returncode < 0:
            return cls(success=False, code=128 - returncode, signal=-returncode)
        return cls(success=returncode == 0, code=returncode)


def _resolve(future: asyncio.Future[None]) -> None:
    if not future.done():
        future.set_result(None)


class ScopedReader:
    """Close-idempotent wrapper around a child's stdout or stderr."""

    def __init__(
        self,
        reader: asyncio.StreamReader | None,
        transport: asyncio.BaseTransport | None = None,
        *,
        read_size: int = DEFAULT_READ_SIZE,
    ) -> None:
        self._reader = reader
        self._transport = transport
        self._read_size = read_size
        self._closed = reader is None
        self.drained: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if self._closed:
            _resolve(self.drained)

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def read(self, n: int | None = None) -> bytes:
        """Read up to ``n`` bytes; returns ``b""`` at end of data or once closed."""
        if self._closed or self._reader is None:
            return b""
        data = await self._reader.read(n or self._read_size)
        if not data:
            _resolve(self.drained)
        return data

    async def __aiter__(self) -> AsyncIterator[bytes]:
        while True:
            chunk = await self.read()
            if not chunk:
                return
            yield chunk

    async def wait_drained(self) -> None:
        await asyncio.shield(self.drained)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._transport is not None:
            try:
                self._transport.close()
            except RuntimeError as e:
                # event loop already closed during teardown
                logger.debug(f"Could not close pipe transport: {e}")
        _resolve(self.drained)


class ScopedWriter:
    """Close-idempotent wrapper around a child's stdin."""

    def __init__(self, writer: asyncio.StreamWriter | None) -> None:
        self._writer = writer
        self._closed = writer is None
        self.drained: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if self._closed:
            _resolve(self.drained)

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def write(self, data: bytes) -> None:
        """Write and drain.

        Raises:
            BrokenPipeError: If the writer is closed
            ConnectionResetError: If the child closed its end of the pipe
        """
        if self._closed or self._writer is None:
            raise BrokenPipeError("stdin is closed")
        self._writer.write(data)
        await self._writer.drain()

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._writer is not None:
            try:
                self._writer.close()
            except RuntimeError as e:
                logger.debug(f"Could not close stdin: {e}")
        _resolve(self.drained)

    async def aclose(self) -> None:
        """Close and wait until the pipe is flushed, ignoring a vanished reader."""
        self.close()
        if self._writer is not None:
            try:
                await self._writer.wait_closed()
            except (BrokenPipeError, ConnectionResetError):
                pass


class ProcessHandle:
    """A live child process, its three scoped streams and its exit status.

    The ``status`` future resolves exactly once, when the OS reports the
    process exit. ``close()`` releases everything immediately (killing the
    process group if needed); ``aclose()`` terminates gracefully first.
    """

    def __init__(
        self,
        spec: ProcessSpec,
        transport: asyncio.SubprocessTransport,
        protocol: ExitAwareProtocol,
        process: asyncio.subprocess.Process,
        *,
        runner: ProcessRunner | None = None,
        group: "ProcessGroup | None" = None,
        read_size: int = DEFAULT_READ_SIZE,
    ) -> None:
        self.spec = spec
        self.pid: int = process.pid
        self.group = group
        self._transport = transport
        self._process = process
        self._runner = runner or ProcessRunner()
        self._loop = asyncio.get_running_loop()
        self._closed = False

        self.stdin = ScopedWriter(process.stdin)
        self.stdout = ScopedReader(
            process.stdout, transport.get_pipe_transport(1), read_size=read_size
        )
        self.stderr = ScopedReader(
            process.stderr, transport.get_pipe_transport(2), read_size=read_size
        )

        self._exited = protocol.exited
        self.status: asyncio.Future[ExitStatus] = self._loop.create_future()
        self._exited.add_done_callback(self._on_exit)

    def _on_exit(self, exited: asyncio.Future[int]) -> None:
        if self.status.done():
            return
        if exited.cancelled():
            self.status.cancel()
            return
        status = ExitStatus.from_returncode(exited.result())
        logger.debug(f"Subprocess exited pid={self.pid} code={status.code}")
        self.status.set_result(status)

    @property
    def command(self) -> tuple[str, ...]:
        return self.spec.argv

    @property
    def returncode(self) -> int | None:
        return self._exited.result() if self._exited.done() else None

    @property
    def is_running(self) -> bool:
        return not self._exited.done()

    @property
    def is_closed(self) -> bool:
        return self._closed

    async def wait(self) -> ExitStatus:
        """Wait for the process to exit; does not depend on the pipes being closed."""
        return await asyncio.shield(self.status)

    async def terminate(self) -> None:
        """SIGTERM the process group, escalating to SIGKILL after ``term_timeout``."""
        await self._runner.terminate(self._process, self._exited)

    def close(self) -> None:
        """Release streams and the process; safe to call repeatedly."""
        if self._closed:
            return
        self._closed = True

        self.stdin.close()
        self.stdout.close()
        self.stderr.close()

        if self.is_running:
            kill_process_group(self.pid)
            # closing the transport of a live process would reap it behind the exit watcher
            self._exited.add_done_callback(lambda _: self._close_transport())
        else:
            self._close_transport()

        if self.group is not None:
            self.group.remove(self.pid)
        logger.debug(f"Closed process handle pid={self.pid}")

    def _close_transport(self) -> None:
        if self._loop.is_closed():
            logger.debug(f"Event loop closed, skipped transport close pid={self.pid}")
            return
        try:
            self._transport.close()
        except (ProcessLookupError, RuntimeError) as e:
            logger.debug(f"Transport close failed pid={self.pid}: {e}")

    async def aclose(self) -> None:
        """Terminate gracefully (if still running), then close."""
        if self._closed:
            return
        self.stdin.close()
        try:
            if self.is_running:
                await self.terminate()
        finally:
            self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else ("running" if self.is_running else "exited")
        return f"ProcessHandle(pid={self.pid}, argv={self.spec.argv[0]!r}, {state})"
