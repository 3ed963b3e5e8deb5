"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import sys
from pathlib import Path

import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from procstream.runtime.group import ProcessGroup, TeardownArena  # noqa: E402

# 测试用假命令行脚本
FAKE_CLI = Path(__file__).parent / "fixtures" / "fake_cli.py"

IS_WINDOWS = sys.platform == "win32"


def fake_cli(*args: str) -> list[str]:
    """构造运行 fake_cli.py 的命令向量。"""
    return [sys.executable, str(FAKE_CLI), *args]


@pytest.fixture
def arena():
    """独立的 TeardownArena，测试结束时关闭全部进程组。"""
    arena = TeardownArena()
    yield arena
    arena.close_all()


@pytest.fixture
def group(arena: TeardownArena) -> ProcessGroup:
    """短超时的进程组，避免终止测试等待过久。"""
    return ProcessGroup(arena, term_timeout=0.5, kill_timeout=0.3)
