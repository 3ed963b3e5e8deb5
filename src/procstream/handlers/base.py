"""Input/output handler contracts.

An input handler writes a value of type A into a process's stdin and must
close stdin on every exit path. ``fail_on_empty_input`` documents whether
a missing (None) input is an error for that handler.

An output handler turns the process's stdout/stderr into a value of type
B, or raises a PipelineError. It receives the input handler's task so it
can report input failures, and it owns the process from then on: it must
release it once its result is complete (for streaming results, when the
returned sequence ends or is closed).

The concrete handlers form a closed set, listed in ``INPUT_HANDLERS`` and
``OUTPUT_HANDLERS``.
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Generic, TypeVar

from ..runtime.handles import ProcessHandle, ScopedReader, ScopedWriter

__all__ = ["InputHandler", "OutputHandler"]

A = TypeVar("A")
B = TypeVar("B")


class InputHandler(ABC, Generic[A]):
    """Writes the input value into stdin."""

    fail_on_empty_input: ClassVar[bool] = False

    @abstractmethod
    async def process_input(self, value: A | None, stdin: ScopedWriter) -> None:
        """Write ``value`` to ``stdin`` and close it, even on failure."""


class OutputHandler(ABC, Generic[B]):
    """Produces the stage's result from stdout/stderr."""

    @abstractmethod
    async def process_output(
        self,
        stdout: ScopedReader,
        stderr: ScopedReader,
        process: ProcessHandle,
        input_done: asyncio.Future[Any],
    ) -> B:
        """Return the result or raise a PipelineError."""
