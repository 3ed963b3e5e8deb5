"""Runner: one process between an input handler and an output handler.

procstream runner module v0.1.0

Example:
    lines = await runner(StringArrayInput(), StringArrayOutput()).run(
        group,
        ProcessSpec(["sort"]),
        ["b", "a"],
    )
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Generic, TypeVar

from .handlers.base import InputHandler, OutputHandler
from .handlers.inputs import INPUT_HANDLERS, EmptyInput
from .handlers.outputs import OUTPUT_HANDLERS, BytesOutput
from .runtime.group import ProcessGroup
from .runtime.process_runner import ProcessSpec

__all__ = ["Runner", "runner"]

logger = logging.getLogger(__name__)

A = TypeVar("A")
B = TypeVar("B")


class Runner(Generic[A, B]):
    """Pairs one input handler with one output handler.

    Args:
        input_handler: One of the handlers in ``INPUT_HANDLERS``
        output_handler: One of the handlers in ``OUTPUT_HANDLERS``

    Raises:
        TypeError: If a handler is not one of the supported variants
    """

    def __init__(self, input_handler: InputHandler[A], output_handler: OutputHandler[B]) -> None:
        if not isinstance(input_handler, INPUT_HANDLERS):
            raise TypeError(f"unsupported input handler: {type(input_handler).__name__}")
        if not isinstance(output_handler, OUTPUT_HANDLERS):
            raise TypeError(f"unsupported output handler: {type(output_handler).__name__}")
        self.input_handler = input_handler
        self.output_handler = output_handler

    async def run(
        self,
        group: ProcessGroup,
        spec: ProcessSpec | Sequence[str],
        value: A | None = None,
    ) -> B:
        """Spawn ``spec`` in ``group``, feed ``value``, and return the output.

        Raises:
            ValueError: If ``value`` is None and the input handler requires input
            PipelineError: If the process (or its input) failed
        """
        if value is None and self.input_handler.fail_on_empty_input:
            raise ValueError(f"empty input for {type(self.input_handler).__name__}")

        handle = await group.spawn(spec)
        input_done: asyncio.Task[Any] = asyncio.create_task(
            self.input_handler.process_input(value, handle.stdin)
        )
        try:
            return await self.output_handler.process_output(
                handle.stdout, handle.stderr, handle, input_done
            )
        except BaseException:
            logger.debug(f"Runner failed, releasing pid={handle.pid}")
            input_done.cancel()
            handle.close()
            raise


def runner(
    input_handler: InputHandler[Any] | None = None,
    output_handler: OutputHandler[Any] | None = None,
) -> Runner[Any, Any]:
    """Build a Runner; defaults to no input and collected bytes output."""
    return Runner(input_handler or EmptyInput(), output_handler or BytesOutput())
