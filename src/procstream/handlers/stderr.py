"""Stderr processing strategies.

A strategy receives the child's stderr as decoded lines and returns a
value that is handed to error overrides as ``stderr_data``. When it
returns a list of strings, the list is also attached to the raised
``ExitCodeError``/``SignalError`` as ``stderr_tail``.

Built-ins:
- stderr_to_host: copy every line to the host's stderr (default)
- stderr_discard: drop everything
- stderr_tail(n): keep the last n lines
- stderr_to_log: log every line at WARNING
"""

from __future__ import annotations

import logging
import sys
from collections import deque
from collections.abc import AsyncIterable, Awaitable, Callable
from typing import Any

from ..config import get_config

__all__ = [
    "StderrStrategy",
    "stderr_to_host",
    "stderr_discard",
    "stderr_tail",
    "stderr_to_log",
]

logger = logging.getLogger(__name__)

StderrStrategy = Callable[[AsyncIterable[str]], Awaitable[Any]]


async def stderr_to_host(lines: AsyncIterable[str]) -> None:
    async for line in lines:
        sys.stderr.write(line + "\n")
        sys.stderr.flush()


async def stderr_discard(lines: AsyncIterable[str]) -> None:
    async for _ in lines:
        pass


def stderr_tail(n: int | None = None) -> StderrStrategy:
    """Keep the last ``n`` lines (default from configuration).

    The returned list starts with ``"..."`` when earlier lines were dropped.
    """
    limit = n if n is not None else get_config().stderr_tail_lines
    if limit < 1:
        raise ValueError("stderr tail must keep at least one line")

    async def collect_tail(lines: AsyncIterable[str]) -> list[str]:
        tail: deque[str] = deque(maxlen=limit)
        dropped = False
        async for line in lines:
            if len(tail) == limit:
                dropped = True
            tail.append(line)
        return ["...", *tail] if dropped else list(tail)

    return collect_tail


async def stderr_to_log(lines: AsyncIterable[str]) -> None:
    async for line in lines:
        logger.warning(f"stderr: {line}")
