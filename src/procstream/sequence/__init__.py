"""Lazy async sequences, line handling and bounded concurrency."""

from __future__ import annotations

from .concurrent import ConcurrentOptions, concurrent_map, concurrent_unordered_map
from .enumerable import (
    BytesEnumerable,
    CachedEnumerable,
    Enumerable,
    ProcessEnumerable,
    range_seq,
    run,
    sequence,
)
from .writable import WritableIterable

__all__ = [
    "BytesEnumerable",
    "CachedEnumerable",
    "ConcurrentOptions",
    "Enumerable",
    "ProcessEnumerable",
    "WritableIterable",
    "concurrent_map",
    "concurrent_unordered_map",
    "range_seq",
    "run",
    "sequence",
]
