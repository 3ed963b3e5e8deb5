"""procstream 应用入口。

为使用 procstream 的脚本提供统一的生命周期管理：
- 配置日志输出（stderr 或调试模式下的临时文件）
- 安装信号管理器（SIGINT 关闭进程组并取消主任务）
- 退出时关闭所有进程组，确保不遗留子进程

用法:
    from procstream import run
    from procstream.app import run as run_app

    async def main():
        async for line in run("ls", "-1").lines:
            print(line)

    run_app(main)
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import sys
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import anyio

from .config import Config, get_config
from .runtime.group import TeardownArena
from .signal_manager import SignalManager

__all__ = ["configure_logging", "run"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


def configure_logging(config: Config | None = None) -> None:
    """配置日志输出。

    - 默认模式：输出到 stderr，procstream 命名空间为 INFO
    - LOG_DEBUG 模式：输出到临时文件，procstream 命名空间为 DEBUG
    - 第三方库（root logger）保持 WARNING，减少噪音
    """
    config = config or get_config()
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.log_file:
        file_handler = logging.FileHandler(config.log_file, encoding="utf-8")
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 procstream 命名空间启用详细日志
    logging.getLogger("procstream").setLevel(log_level)


async def _run_main(
    main: Callable[..., Awaitable[T]],
    args: tuple[Any, ...],
    arena: TeardownArena,
) -> tuple[T | None, bool]:
    """运行主协程，并集成信号管理器。

    Returns:
        (主协程结果, 是否需要以 130 退出)
    """
    signal_manager = SignalManager(arena)
    main_task: asyncio.Task | None = None
    shutdown_watcher: asyncio.Task | None = None

    async def _watch_shutdown() -> None:
        """监听 shutdown 事件并取消主任务。"""
        await signal_manager.wait_for_shutdown()
        logger.info("Shutdown signal received, cancelling main task...")
        if main_task and not main_task.done():
            main_task.cancel()

    try:
        await signal_manager.start()

        main_task = asyncio.create_task(main(*args), name="procstream-main")
        signal_manager.main_task = main_task
        shutdown_watcher = asyncio.create_task(_watch_shutdown(), name="shutdown-watcher")

        try:
            return await main_task, signal_manager.is_force_exit
        except (anyio.get_cancelled_exc_class(), asyncio.CancelledError):
            if not signal_manager.is_shutdown_requested:
                raise
            logger.info("Main task cancelled by signal")
            return None, True

    finally:
        if shutdown_watcher and not shutdown_watcher.done():
            shutdown_watcher.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await shutdown_watcher

        await signal_manager.stop()

        # 优雅关闭所有仍然存活的进程组
        for group in arena:
            await group.aclose()
        logger.debug("run: cleanup completed")


def run(main: Callable[..., Awaitable[T]], *args: Any) -> T | None:
    """运行 ``main(*args)``，退出前关闭所有进程组。

    被信号中断时以退出码 130 退出 (128 + SIGINT)。
    """
    config = get_config()
    configure_logging(config)
    logger.debug(f"Starting procstream application: {config}")

    arena = TeardownArena.process_wide()
    try:
        result, interrupted = asyncio.run(_run_main(main, args, arena))
    finally:
        # close_all() stays with atexit so later groups are still torn down
        arena.close_live()

    if interrupted:
        logger.warning("Interrupted, terminating with exit code 130")
        sys.exit(130)
    return result
