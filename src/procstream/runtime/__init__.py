"""Runtime module for child process management.

This module provides isolated process spawning, close-idempotent handles
for processes and their streams, and process groups that guarantee every
child is released exactly once.
"""

from __future__ import annotations

from .group import ProcessGroup, TeardownArena
from .handles import ExitStatus, ProcessHandle, ScopedReader, ScopedWriter
from .process_runner import ProcessRunner, ProcessSpec

__all__ = [
    "ExitStatus",
    "ProcessGroup",
    "ProcessHandle",
    "ProcessRunner",
    "ProcessSpec",
    "ScopedReader",
    "ScopedWriter",
    "TeardownArena",
]
