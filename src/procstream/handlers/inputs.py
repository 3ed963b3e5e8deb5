"""Input handlers: how a value reaches a process's stdin."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterable, Iterable, Sequence
from typing import Any

from ..runtime.handles import ScopedWriter
from ..sequence.lines import to_bytes
from ..sequence.operators import closing_iter
from .base import InputHandler

__all__ = [
    "EmptyInput",
    "BytesInput",
    "StringInput",
    "StringArrayInput",
    "IterableInput",
    "feed_stdin",
    "INPUT_HANDLERS",
]

logger = logging.getLogger(__name__)


async def feed_stdin(items: AsyncIterable[Any] | Iterable[Any], stdin: ScopedWriter) -> None:
    """Write ``items`` (converted with ``to_bytes``) to stdin, then close it.

    A broken pipe means the process stopped reading, which is not a
    failure of the input. Any other exception propagates.
    """
    try:
        async with closing_iter(to_bytes(items)) as chunks:
            async for chunk in chunks:
                await stdin.write(chunk)
    except (BrokenPipeError, ConnectionResetError) as e:
        logger.debug(f"Process stopped reading stdin: {e!r}")
    finally:
        stdin.close()


class EmptyInput(InputHandler[None]):
    """No input; stdin is closed immediately."""

    async def process_input(self, value: None, stdin: ScopedWriter) -> None:
        stdin.close()


class BytesInput(InputHandler[bytes]):
    fail_on_empty_input = True

    async def process_input(self, value: bytes | None, stdin: ScopedWriter) -> None:
        await feed_stdin([value] if value else [], stdin)


class StringInput(InputHandler[str]):
    """Text written as UTF-8, unchanged (no terminator is added)."""

    fail_on_empty_input = True

    async def process_input(self, value: str | None, stdin: ScopedWriter) -> None:
        await feed_stdin([value.encode("utf-8")] if value else [], stdin)


class StringArrayInput(InputHandler[Sequence[str]]):
    """Each string written as one LF-terminated line."""

    fail_on_empty_input = True

    async def process_input(self, value: Sequence[str] | None, stdin: ScopedWriter) -> None:
        await feed_stdin(list(value or []), stdin)


class IterableInput(InputHandler[Any]):
    """Any sync or async iterable of str, bytes or lists of them."""

    fail_on_empty_input = True

    async def process_input(self, value: Any, stdin: ScopedWriter) -> None:
        if value is None:
            value = []
        elif isinstance(value, (str, bytes)):
            value = [value]
        await feed_stdin(value, stdin)


INPUT_HANDLERS: tuple[type[InputHandler[Any]], ...] = (
    EmptyInput,
    BytesInput,
    StringInput,
    StringArrayInput,
    IterableInput,
)
