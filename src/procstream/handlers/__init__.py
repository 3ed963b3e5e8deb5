"""Pipeline boundary handlers.

Input handlers feed a value into a process's stdin, output handlers turn
its stdout/stderr into a result, and stderr strategies decide what
happens to the error stream.
"""

from .base import InputHandler, OutputHandler
from .stderr import StderrStrategy, stderr_discard, stderr_tail, stderr_to_host, stderr_to_log
from .stage import ErrorOverride, PipelineStage, StageIterator
from .inputs import (
    INPUT_HANDLERS,
    BytesInput,
    EmptyInput,
    IterableInput,
    StringArrayInput,
    StringInput,
    feed_stdin,
)
from .outputs import (
    OUTPUT_HANDLERS,
    BytesIterableOutput,
    BytesOutput,
    LinesOutput,
    StringArrayOutput,
    StringOutput,
)

__all__ = [
    "InputHandler",
    "OutputHandler",
    "StderrStrategy",
    "stderr_discard",
    "stderr_tail",
    "stderr_to_host",
    "stderr_to_log",
    "ErrorOverride",
    "PipelineStage",
    "StageIterator",
    "INPUT_HANDLERS",
    "BytesInput",
    "EmptyInput",
    "IterableInput",
    "StringArrayInput",
    "StringInput",
    "feed_stdin",
    "OUTPUT_HANDLERS",
    "BytesIterableOutput",
    "BytesOutput",
    "LinesOutput",
    "StringArrayOutput",
    "StringOutput",
]
