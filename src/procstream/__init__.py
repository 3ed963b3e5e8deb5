"""procstream - 子进程管道与异步序列运行时。

将外部命令和进程内转换组合成统一的惰性序列：
- 有界并发 (concurrent_map / concurrent_unordered_map)
- 确定性的资源清理 (ProcessGroup / TeardownArena)
- 统一的错误传播 (ExitCodeError / SignalError / UpstreamError / TransformError)

环境变量:
    PROCSTREAM_CONCURRENCY: 默认并发数（默认 CPU 核心数）
    PROCSTREAM_LOG_DEBUG: 调试日志输出到临时文件 (默认 false)

用法:
    from procstream import run, sequence

    count = await sequence(["b", "a"]).run("sort").lines.count()
"""

__version__ = "0.1.0"

from .errors import (
    ErrorKind,
    ExitCodeError,
    PipelineError,
    SignalError,
    TransformError,
    UpstreamError,
    classify_error,
)
from .handlers import (
    BytesInput,
    BytesIterableOutput,
    BytesOutput,
    EmptyInput,
    IterableInput,
    LinesOutput,
    StringArrayInput,
    StringArrayOutput,
    StringInput,
    StringOutput,
    stderr_discard,
    stderr_tail,
    stderr_to_host,
    stderr_to_log,
)
from .runner import Runner, runner
from .runtime import ExitStatus, ProcessGroup, ProcessHandle, ProcessSpec, TeardownArena
from .sequence import (
    BytesEnumerable,
    CachedEnumerable,
    ConcurrentOptions,
    Enumerable,
    ProcessEnumerable,
    WritableIterable,
    concurrent_map,
    concurrent_unordered_map,
    range_seq,
    run,
    sequence,
)

__all__ = [
    "__version__",
    # errors
    "ErrorKind",
    "ExitCodeError",
    "PipelineError",
    "SignalError",
    "TransformError",
    "UpstreamError",
    "classify_error",
    # runtime
    "ExitStatus",
    "ProcessGroup",
    "ProcessHandle",
    "ProcessSpec",
    "TeardownArena",
    # sequences
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
    # handlers
    "BytesInput",
    "BytesIterableOutput",
    "BytesOutput",
    "EmptyInput",
    "IterableInput",
    "LinesOutput",
    "StringArrayInput",
    "StringArrayOutput",
    "StringInput",
    "StringOutput",
    "stderr_discard",
    "stderr_tail",
    "stderr_to_host",
    "stderr_to_log",
    "Runner",
    "runner",
]
