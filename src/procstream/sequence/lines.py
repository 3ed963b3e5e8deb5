"""Byte/line transformers.

procstream sequence module v0.1.0

This module provides:
- split_lines: byte chunks -> byte lines (LF or CRLF, split across chunks)
- to_lines / to_chunked_lines: the same, decoded as UTF-8
- to_bytes: lines or raw bytes -> bytes suitable for a process's stdin
- buffer, decode_text, gunzip, json_dumps_lines, json_loads_lines
"""

from __future__ import annotations

import codecs
import json
import zlib
from collections.abc import AsyncIterable, AsyncIterator, Iterable
from typing import Any

from .operators import closing_iter, iterate

__all__ = [
    "split_lines",
    "to_chunked_byte_lines",
    "to_lines",
    "to_chunked_lines",
    "to_bytes",
    "buffer",
    "decode_text",
    "gunzip",
    "json_dumps_lines",
    "json_loads_lines",
]

LF = b"\n"
CR = b"\r"


def _strip_cr(line: bytes) -> bytes:
    return line[:-1] if line.endswith(CR) else line


class _LineSplitter:
    """Incremental splitter; keeps the trailing partial line between chunks."""

    def __init__(self) -> None:
        self._pending: list[bytes] = []

    def feed(self, chunk: bytes) -> list[bytes]:
        lines: list[bytes] = []
        start = 0
        while True:
            index = chunk.find(LF, start)
            if index < 0:
                break
            self._pending.append(chunk[start:index])
            # CR is stripped from the reassembled line, not per chunk
            lines.append(_strip_cr(b"".join(self._pending)))
            self._pending.clear()
            start = index + 1
        if start < len(chunk):
            self._pending.append(chunk[start:])
        return lines

    def finish(self) -> bytes | None:
        if not self._pending:
            return None
        line = _strip_cr(b"".join(self._pending))
        self._pending.clear()
        return line


async def split_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """Split byte chunks into lines without their terminators.

    Every LF ends a line, so consecutive terminators yield empty lines.
    A non-empty trailing fragment without a terminator is yielded last.
    """
    splitter = _LineSplitter()
    async with closing_iter(chunks) as items:
        async for chunk in items:
            for line in splitter.feed(chunk):
                yield line
    last = splitter.finish()
    if last is not None:
        yield last


async def to_chunked_byte_lines(chunks: AsyncIterable[bytes]) -> AsyncIterator[list[bytes]]:
    """Like ``split_lines`` but yields the lines completed by each chunk as one list."""
    splitter = _LineSplitter()
    async with closing_iter(chunks) as items:
        async for chunk in items:
            lines = splitter.feed(chunk)
            if lines:
                yield lines
    last = splitter.finish()
    if last is not None:
        yield [last]


async def to_lines(chunks: AsyncIterable[bytes], encoding: str = "utf-8") -> AsyncIterator[str]:
    async with closing_iter(split_lines(chunks)) as lines:
        async for line in lines:
            yield line.decode(encoding, errors="replace")


async def to_chunked_lines(
    chunks: AsyncIterable[bytes],
    encoding: str = "utf-8",
) -> AsyncIterator[list[str]]:
    async with closing_iter(to_chunked_byte_lines(chunks)) as groups:
        async for lines in groups:
            yield [line.decode(encoding, errors="replace") for line in lines]


def _encode_item(item: Any) -> bytes:
    if isinstance(item, (bytes, bytearray, memoryview)):
        return bytes(item)
    if isinstance(item, str):
        return (item + "\n").encode("utf-8")
    if isinstance(item, (list, tuple)):
        return b"".join(_encode_item(element) for element in item)
    raise TypeError(f"cannot convert {type(item).__name__} to bytes")


async def to_bytes(items: AsyncIterable[Any] | Iterable[Any]) -> AsyncIterator[bytes]:
    """Convert items into bytes for a process's stdin.

    - str: UTF-8 encoded with a trailing LF
    - bytes: passed through unchanged
    - list/tuple of str or bytes: each element converted as above

    Raises:
        TypeError: For any other element type
    """
    async with closing_iter(iterate(items)) as elements:
        async for item in elements:
            data = _encode_item(item)
            if data:
                yield data


async def buffer(chunks: AsyncIterable[bytes], size: int) -> AsyncIterator[bytes]:
    """Regroup byte chunks into chunks of ``size`` bytes (the last may be shorter)."""
    if size < 1:
        raise ValueError("buffer size must be at least 1")
    pending = bytearray()
    async with closing_iter(chunks) as items:
        async for chunk in items:
            pending.extend(chunk)
            while len(pending) >= size:
                yield bytes(pending[:size])
                del pending[:size]
    if pending:
        yield bytes(pending)


async def decode_text(chunks: AsyncIterable[bytes], encoding: str = "utf-8") -> AsyncIterator[str]:
    """Decode byte chunks into text, handling multi-byte characters split across chunks."""
    decoder = codecs.getincrementaldecoder(encoding)(errors="replace")
    async with closing_iter(chunks) as items:
        async for chunk in items:
            text = decoder.decode(chunk)
            if text:
                yield text
    tail = decoder.decode(b"", final=True)
    if tail:
        yield tail


async def gunzip(chunks: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
    """Decompress a gzip byte stream."""
    decompressor = zlib.decompressobj(16 + zlib.MAX_WBITS)
    async with closing_iter(chunks) as items:
        async for chunk in items:
            data = decompressor.decompress(chunk)
            if data:
                yield data
    tail = decompressor.flush()
    if tail:
        yield tail


async def json_dumps_lines(items: AsyncIterable[Any]) -> AsyncIterator[str]:
    async with closing_iter(items) as values:
        async for value in values:
            yield json.dumps(value)


async def json_loads_lines(lines: AsyncIterable[str]) -> AsyncIterator[Any]:
    """Parse one JSON document per line; blank lines are skipped."""
    async with closing_iter(lines) as values:
        async for line in values:
            if line.strip():
                yield json.loads(line)
