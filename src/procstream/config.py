"""procstream 环境变量配置管理。

环境变量:
    PROCSTREAM_CONCURRENCY: concurrent_map 系列的默认并发数
        - 默认为 CPU 逻辑核心数
        - 小于 1 或无法解析时使用默认值

    PROCSTREAM_TERM_TIMEOUT: 发送 SIGTERM 后等待子进程退出的时间（秒）
        - 默认 2.0 秒，限制在 0.1-60 秒

    PROCSTREAM_KILL_TIMEOUT: 发送 SIGKILL 后等待子进程退出的时间（秒）
        - 默认 1.0 秒，限制在 0.1-60 秒

    PROCSTREAM_STDERR_TAIL: stderr_tail 策略保留的 stderr 行数
        - 默认 20 行

    PROCSTREAM_READ_CHUNK: 每次从子进程 stdout/stderr 读取的字节数
        - 默认 65536

    PROCSTREAM_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)

    PROCSTREAM_SIGINT_MODE: SIGINT (Ctrl+C) 处理模式
        - cancel = 关闭所有进程组并取消主任务 (默认)
        - exit = 直接请求退出

    PROCSTREAM_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间（秒）
        - 默认 1.0 秒
        - 在此时间窗口内第二次 Ctrl+C 将强制退出
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

__all__ = ["Config", "load_config", "get_config", "reload_config", "SigintMode"]

DEFAULT_TERM_TIMEOUT = 2.0
DEFAULT_KILL_TIMEOUT = 1.0
DEFAULT_STDERR_TAIL = 20
DEFAULT_READ_CHUNK = 65536
DEFAULT_DOUBLE_TAP_WINDOW = 1.0


class SigintMode(Enum):
    """SIGINT 处理模式。

    - CANCEL: 关闭所有存活的进程组并取消主任务
    - EXIT: 直接请求退出（传统行为）
    """

    CANCEL = "cancel"
    EXIT = "exit"

    @classmethod
    def from_string(cls, value: str) -> "SigintMode":
        """从字符串解析模式。

        Args:
            value: 模式字符串 (cancel/exit)

        Returns:
            对应的 SigintMode 枚举值，无效值返回 CANCEL
        """
        value = value.lower().strip()
        for mode in cls:
            if mode.value == value:
                return mode
        return cls.CANCEL


def _default_concurrency() -> int:
    return os.cpu_count() or 1


@dataclass
class Config:
    """procstream 配置。

    Attributes:
        concurrency: concurrent_map 系列的默认并发数
        term_timeout: SIGTERM 之后的等待时间（秒）
        kill_timeout: SIGKILL 之后的等待时间（秒）
        stderr_tail_lines: stderr_tail 策略保留的行数
        read_chunk_size: 单次读取的字节数
        log_debug: 日志调试模式（输出到临时文件）
        log_file: 日志文件路径（当 log_debug=True 时自动设置）
        sigint_mode: SIGINT 处理模式
        sigint_double_tap_window: 双击退出窗口时间（秒）
    """

    concurrency: int = field(default_factory=_default_concurrency)
    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT
    stderr_tail_lines: int = DEFAULT_STDERR_TAIL
    read_chunk_size: int = DEFAULT_READ_CHUNK
    log_debug: bool = False
    log_file: str | None = None
    sigint_mode: SigintMode = SigintMode.CANCEL
    sigint_double_tap_window: float = DEFAULT_DOUBLE_TAP_WINDOW

    def __repr__(self) -> str:
        return (
            f"Config(concurrency={self.concurrency}, "
            f"term_timeout={self.term_timeout}, "
            f"kill_timeout={self.kill_timeout}, "
            f"stderr_tail_lines={self.stderr_tail_lines}, "
            f"read_chunk_size={self.read_chunk_size}, "
            f"log_debug={self.log_debug}, "
            f"log_file={self.log_file}, "
            f"sigint_mode={self.sigint_mode.value}, "
            f"sigint_double_tap_window={self.sigint_double_tap_window})"
        )


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_positive_int(value: str | None, default: int) -> int:
    """解析正整数环境变量，无效值返回默认值。"""
    if not value or not value.strip():
        return default
    try:
        parsed = int(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= 1 else default


def _parse_seconds(value: str | None, default: float, low: float, high: float) -> float:
    """解析秒数环境变量并限制范围。"""
    if not value:
        return default
    try:
        seconds = float(value)
    except ValueError:
        return default
    return max(low, min(seconds, high))


def _generate_log_file_path() -> str:
    """生成日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "procstream"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"procstream_debug_{timestamp}.log"

    return str(log_file.resolve())


def _parse_sigint_mode(value: str | None) -> SigintMode:
    """解析 SIGINT 模式环境变量。"""
    if not value:
        return SigintMode.CANCEL
    return SigintMode.from_string(value)


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("PROCSTREAM_LOG_DEBUG"), default=False)
    log_file = _generate_log_file_path() if log_debug else None

    return Config(
        concurrency=_parse_positive_int(
            os.environ.get("PROCSTREAM_CONCURRENCY"), _default_concurrency()
        ),
        term_timeout=_parse_seconds(
            os.environ.get("PROCSTREAM_TERM_TIMEOUT"), DEFAULT_TERM_TIMEOUT, 0.1, 60.0
        ),
        kill_timeout=_parse_seconds(
            os.environ.get("PROCSTREAM_KILL_TIMEOUT"), DEFAULT_KILL_TIMEOUT, 0.1, 60.0
        ),
        stderr_tail_lines=_parse_positive_int(
            os.environ.get("PROCSTREAM_STDERR_TAIL"), DEFAULT_STDERR_TAIL
        ),
        read_chunk_size=_parse_positive_int(
            os.environ.get("PROCSTREAM_READ_CHUNK"), DEFAULT_READ_CHUNK
        ),
        log_debug=log_debug,
        log_file=log_file,
        sigint_mode=_parse_sigint_mode(os.environ.get("PROCSTREAM_SIGINT_MODE")),
        sigint_double_tap_window=_parse_seconds(
            os.environ.get("PROCSTREAM_SIGINT_DOUBLE_TAP_WINDOW"),
            DEFAULT_DOUBLE_TAP_WINDOW,
            0.1,
            10.0,
        ),
    )


# 全局配置实例（延迟加载）
_config: Config | None = None


def get_config() -> Config:
    """获取全局配置实例。"""
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config() -> Config:
    """重新加载配置（用于测试）。"""
    global _config
    _config = load_config()
    return _config
