"""Pipeline error taxonomy.

procstream errors v0.1.0

Every failure that crosses a process boundary is reported as one of:
- ExitCodeError: process ended with a non-zero exit code
- SignalError: process was killed by a signal
- UpstreamError: an earlier stage of the same pipeline failed
- TransformError: an in-process callback failed while feeding a process

Exceptions raised by in-process operators (map, filter, ...) are not
reclassified while they stay in-process; they reach the consumer as-is.
"""

from __future__ import annotations

import asyncio
import signal as signal_module
from enum import Enum
from typing import Any, Sequence

__all__ = [
    "PipelineError",
    "ExitCodeError",
    "SignalError",
    "UpstreamError",
    "TransformError",
    "ErrorKind",
    "classify_error",
    "exit_error",
]


class PipelineError(Exception):
    """Base class for pipeline failures.

    Attributes:
        message: Human readable message
        command: Command vector of the failing stage (empty for in-process stages)
        cause: The error that triggered this one, if any
    """

    def __init__(
        self,
        message: str,
        command: Sequence[str] = (),
        cause: BaseException | None = None,
    ) -> None:
        self.message = message
        self.command = tuple(str(c) for c in command)
        self.cause = cause
        super().__init__(message)
        if cause is not None:
            self.__cause__ = cause

    @property
    def command_line(self) -> str:
        return " ".join(self.command)

    @property
    def root_cause(self) -> BaseException:
        """Follow the ``cause`` chain down to the first error."""
        err: BaseException = self
        while isinstance(err, PipelineError) and err.cause is not None:
            err = err.cause
        return err

    def __str__(self) -> str:
        if self.command:
            return f"{self.message} [{self.command_line}]"
        return self.message


class ExitCodeError(PipelineError):
    """Process exited with a non-zero code.

    Attributes:
        code: Exit code
        signal: Signal number if the code was derived from a signal
        stderr_tail: Last captured stderr lines, if a capturing strategy was used
    """

    def __init__(
        self,
        code: int,
        command: Sequence[str],
        signal: int | None = None,
        stderr_tail: Sequence[str] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.code = code
        self.signal = signal
        self.stderr_tail = list(stderr_tail) if stderr_tail else []
        message = f"process exited with code: {code}"
        if self.stderr_tail:
            message = "\n".join([message, *(f"\t{line}" for line in self.stderr_tail)])
        super().__init__(message, command, cause)


class SignalError(PipelineError):
    """Process was terminated by a signal.

    Attributes:
        signal: Signal number
        stderr_tail: Last captured stderr lines
    """

    def __init__(
        self,
        signal: int,
        command: Sequence[str],
        stderr_tail: Sequence[str] | None = None,
        cause: BaseException | None = None,
    ) -> None:
        self.signal = signal
        self.stderr_tail = list(stderr_tail) if stderr_tail else []
        message = f"process terminated by signal: {_signal_name(signal)}"
        if self.stderr_tail:
            message = "\n".join([message, *(f"\t{line}" for line in self.stderr_tail)])
        super().__init__(message, command, cause)

    @property
    def code(self) -> int:
        return 128 + self.signal


class UpstreamError(PipelineError):
    """A stage failed because an earlier stage in the pipeline failed."""

    def __init__(self, cause: BaseException, command: Sequence[str] = ()) -> None:
        super().__init__(f"upstream failure: {cause}", command, cause)


class TransformError(PipelineError):
    """An in-process callback raised while its output was feeding a process."""

    def __init__(self, cause: BaseException) -> None:
        super().__init__(f"{type(cause).__name__}: {cause}", (), cause)


class ErrorKind(str, Enum):
    """Failure categories.

    - NONE: no error
    - CANCELLED: the consumer or a signal cancelled the work
    - EXIT_CODE: non-zero exit code
    - SIGNAL: killed by a signal
    - UPSTREAM: an earlier stage failed
    - TRANSFORM: in-process callback failed
    """

    NONE = "none"
    CANCELLED = "cancelled"
    EXIT_CODE = "exit_code"
    SIGNAL = "signal"
    UPSTREAM = "upstream"
    TRANSFORM = "transform"


def classify_error(error: BaseException | None) -> ErrorKind:
    """Map any exception onto an ``ErrorKind``."""
    if error is None:
        return ErrorKind.NONE
    if isinstance(error, asyncio.CancelledError):
        return ErrorKind.CANCELLED
    if isinstance(error, SignalError):
        return ErrorKind.SIGNAL
    if isinstance(error, ExitCodeError):
        return ErrorKind.SIGNAL if error.signal is not None else ErrorKind.EXIT_CODE
    if isinstance(error, UpstreamError):
        return ErrorKind.UPSTREAM
    return ErrorKind.TRANSFORM


def _signal_name(signum: int) -> str:
    try:
        return signal_module.Signals(signum).name
    except ValueError:
        return str(signum)


def exit_error(
    status: Any,
    command: Sequence[str],
    stderr_tail: Sequence[str] | None = None,
    upstream: BaseException | None = None,
) -> PipelineError | None:
    """Classify a finished stage.

    Args:
        status: Exit status with ``success``, ``code`` and ``signal`` attributes
        command: Command vector of the stage
        stderr_tail: Captured stderr lines to include in the message
        upstream: Failure recorded while feeding the stage, if any

    Returns:
        The error to raise, or None when the stage and its upstream succeeded
    """
    if status.signal is not None:
        return SignalError(status.signal, command, stderr_tail, cause=upstream)
    if not status.success:
        return ExitCodeError(status.code, command, stderr_tail=stderr_tail, cause=upstream)
    if upstream is not None:
        return UpstreamError(upstream, command)
    return None
