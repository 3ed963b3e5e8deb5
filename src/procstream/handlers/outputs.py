"""Output handlers: what a caller gets back from a process."""

from __future__ import annotations

import asyncio
from typing import Any, TypeVar

from ..runtime.handles import ProcessHandle, ScopedReader
from ..sequence.enumerable import BytesEnumerable, Enumerable
from ..sequence.lines import to_lines
from ..sequence.operators import closing_iter
from .base import OutputHandler
from .stage import ErrorOverride, PipelineStage, StageIterator
from .stderr import StderrStrategy

__all__ = [
    "BytesOutput",
    "StringOutput",
    "StringArrayOutput",
    "LinesOutput",
    "BytesIterableOutput",
    "OUTPUT_HANDLERS",
]

B = TypeVar("B")


class _StageOutput(OutputHandler[B]):
    """Shared construction of the PipelineStage behind every output handler.

    Args:
        stderr: Stderr strategy (default: copy to the host's stderr)
        on_error: Optional error override ``(error, stderr_data)``
    """

    def __init__(
        self,
        stderr: StderrStrategy | None = None,
        on_error: ErrorOverride | None = None,
    ) -> None:
        self.stderr = stderr
        self.on_error = on_error

    def _stage(
        self,
        stdout: ScopedReader,
        stderr: ScopedReader,
        process: ProcessHandle,
        input_done: asyncio.Future[Any],
    ) -> PipelineStage:
        return PipelineStage(
            process,
            input_done,
            stdout=stdout,
            stderr=stderr,
            stderr_strategy=self.stderr,
            on_error=self.on_error,
        )

    async def _read_all(self, stage: PipelineStage) -> bytes:
        async with closing_iter(stage.stream()) as chunks:
            return b"".join([chunk async for chunk in chunks])


class BytesOutput(_StageOutput[bytes]):
    async def process_output(
        self,
        stdout: ScopedReader,
        stderr: ScopedReader,
        process: ProcessHandle,
        input_done: asyncio.Future[Any],
    ) -> bytes:
        return await self._read_all(self._stage(stdout, stderr, process, input_done))


class StringOutput(_StageOutput[str]):
    """All of stdout decoded as UTF-8."""

    async def process_output(
        self,
        stdout: ScopedReader,
        stderr: ScopedReader,
        process: ProcessHandle,
        input_done: asyncio.Future[Any],
    ) -> str:
        data = await self._read_all(self._stage(stdout, stderr, process, input_done))
        return data.decode("utf-8", errors="replace")


class StringArrayOutput(_StageOutput[list[str]]):
    """Stdout split into lines."""

    async def process_output(
        self,
        stdout: ScopedReader,
        stderr: ScopedReader,
        process: ProcessHandle,
        input_done: asyncio.Future[Any],
    ) -> list[str]:
        stage = self._stage(stdout, stderr, process, input_done)
        async with closing_iter(to_lines(stage.stream())) as lines:
            return [line async for line in lines]


class LinesOutput(_StageOutput[Enumerable[str]]):
    """Streaming lines; the process is released when the sequence ends or is closed."""

    async def process_output(
        self,
        stdout: ScopedReader,
        stderr: ScopedReader,
        process: ProcessHandle,
        input_done: asyncio.Future[Any],
    ) -> Enumerable[str]:
        stage = self._stage(stdout, stderr, process, input_done)
        return Enumerable(StageIterator(to_lines(stage.stream()), stage))


class BytesIterableOutput(_StageOutput[BytesEnumerable]):
    """Streaming byte chunks; the process is released when the sequence ends or is closed."""

    async def process_output(
        self,
        stdout: ScopedReader,
        stderr: ScopedReader,
        process: ProcessHandle,
        input_done: asyncio.Future[Any],
    ) -> BytesEnumerable:
        stage = self._stage(stdout, stderr, process, input_done)
        return BytesEnumerable(StageIterator(stage.stream(), stage))


OUTPUT_HANDLERS: tuple[type[OutputHandler[Any]], ...] = (
    BytesOutput,
    StringOutput,
    StringArrayOutput,
    LinesOutput,
    BytesIterableOutput,
)
