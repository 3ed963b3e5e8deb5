"""信号管理模块。

将 OS 信号转换为进程组级别的操作：
- SIGINT: 关闭所有存活的进程组并取消主任务（而不是直接退出进程）
- SIGTERM: 优雅退出（关闭进程组 + 取消主任务 + 请求关闭）

支持的配置：
- PROCSTREAM_SIGINT_MODE: cancel | exit
- PROCSTREAM_SIGINT_DOUBLE_TAP_WINDOW: 双击退出窗口时间
"""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
import time
from typing import Callable, Optional

from .config import SigintMode, get_config
from .runtime.group import TeardownArena

__all__ = ["SignalManager", "SigintMode"]

logger = logging.getLogger(__name__)


class SignalManager:
    """信号管理器。

    管理 SIGINT 和 SIGTERM 信号的处理：
    - SIGINT (cancel 模式): 关闭 arena 中所有进程组，终止子进程，并取消主任务
    - SIGINT (exit 模式): 请求关闭
    - SIGTERM: 关闭进程组并请求关闭

    Example:
        ```python
        arena = TeardownArena.process_wide()
        signal_manager = SignalManager(arena)

        async def main():
            await signal_manager.start()
            try:
                await run("sleep", "100").run_all()
            finally:
                await signal_manager.stop()
        ```

    Attributes:
        arena: 进程组注册表
        sigint_mode: SIGINT 处理模式
        double_tap_window: 双击退出窗口时间（秒）
        main_task: SIGINT/SIGTERM 时要取消的主任务（可选）
    """

    def __init__(
        self,
        arena: TeardownArena,
        sigint_mode: Optional[SigintMode] = None,
        double_tap_window: Optional[float] = None,
        on_shutdown: Optional[Callable[[], None]] = None,
        main_task: Optional[asyncio.Task] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            arena: 进程组注册表
            sigint_mode: SIGINT 处理模式（默认从配置读取）
            double_tap_window: 双击退出窗口时间（默认从配置读取）
            on_shutdown: 关闭时的回调函数
            main_task: 要取消的主任务
        """
        self.arena = arena
        self.main_task = main_task

        config = get_config()
        self.sigint_mode = sigint_mode if sigint_mode is not None else config.sigint_mode
        self.double_tap_window = (
            double_tap_window if double_tap_window is not None else config.sigint_double_tap_window
        )
        self._on_shutdown = on_shutdown

        # 内部状态
        self._last_sigint_time: float = 0.0
        self._shutdown_requested: bool = False
        self._force_exit: bool = False  # 双击 SIGINT 触发的强制退出标志
        self._shutdown_event: Optional[asyncio.Event] = None
        self._original_sigint_handler = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_shutdown_requested(self) -> bool:
        """是否已请求关闭。"""
        return self._shutdown_requested

    @property
    def is_force_exit(self) -> bool:
        """是否请求强制退出（双击 SIGINT）。"""
        return self._force_exit

    async def start(self) -> None:
        """启动信号监听。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._running = True

        if sys.platform != "win32":
            self._loop.add_signal_handler(signal.SIGINT, self._handle_sigint)
            self._loop.add_signal_handler(signal.SIGTERM, self._handle_sigterm)
            logger.debug(
                f"Signal handlers installed (mode={self.sigint_mode.value}, "
                f"double_tap_window={self.double_tap_window}s)"
            )
        else:
            # Windows: 使用 signal.signal() 设置处理器
            self._original_sigint_handler = signal.signal(
                signal.SIGINT,
                lambda sig, frame: self._loop.call_soon_threadsafe(self._handle_sigint),
            )
            logger.debug(f"SIGINT handler installed on Windows (mode={self.sigint_mode.value})")

    async def stop(self) -> None:
        """停止信号监听，恢复原始信号处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            try:
                self._loop.remove_signal_handler(signal.SIGINT)
                self._loop.remove_signal_handler(signal.SIGTERM)
            except (RuntimeError, ValueError) as e:
                logger.debug(f"Error removing signal handlers: {e}")
        elif sys.platform == "win32" and self._original_sigint_handler is not None:
            try:
                signal.signal(signal.SIGINT, self._original_sigint_handler)
            except (OSError, ValueError) as e:
                logger.debug(f"Error restoring SIGINT handler: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_shutdown(self) -> None:
        """等待关闭信号。"""
        if self._shutdown_event:
            await self._shutdown_event.wait()

    def cancel_active(self) -> int:
        """关闭所有存活的进程组并取消主任务。

        Returns:
            被关闭的进程组数量
        """
        count = 0
        for group in self.arena:
            if not group.is_closed:
                group.close()
                count += 1
        if self.main_task is not None and not self.main_task.done():
            self.main_task.cancel()
        return count

    def _has_active_work(self) -> bool:
        if len(self.arena) > 0:
            return True
        return self.main_task is not None and not self.main_task.done()

    def _handle_sigint(self) -> None:
        """处理 SIGINT 信号。

        - 在双击窗口内再次收到 SIGINT：强制退出
        - EXIT 模式：请求关闭
        - CANCEL 模式：有活动工作则关闭进程组并取消主任务，否则请求关闭
        """
        current_time = time.time()
        time_since_last = current_time - self._last_sigint_time
        self._last_sigint_time = current_time

        if time_since_last < self.double_tap_window and self._shutdown_requested:
            logger.warning("Double SIGINT detected, forcing shutdown")
            self._force_shutdown()
            return

        if self.sigint_mode == SigintMode.EXIT:
            logger.info("SIGINT received (mode=exit), requesting shutdown")
            self._request_shutdown()
        elif self._has_active_work():
            count = self.cancel_active()
            logger.info(f"SIGINT received (mode=cancel), closed {count} process group(s)")
            # 第二次 Ctrl+C 在窗口内将强制退出
            self._shutdown_requested = True
        else:
            logger.info("SIGINT received (mode=cancel), nothing active, requesting shutdown")
            self._request_shutdown()

    def _handle_sigterm(self) -> None:
        """处理 SIGTERM 信号：关闭所有进程组并请求关闭。"""
        logger.info("SIGTERM received, initiating graceful shutdown")
        count = self.cancel_active()
        if count:
            logger.info(f"Closed {count} process group(s) for shutdown")
        self._request_shutdown()

    def _request_shutdown(self) -> None:
        """请求关闭。"""
        self._shutdown_requested = True

        if self._on_shutdown:
            try:
                self._on_shutdown()
            except Exception as e:
                logger.warning(f"Error in shutdown callback: {e}")

        if self._shutdown_event and self._loop:
            self._loop.call_soon_threadsafe(self._shutdown_event.set)

    def _force_shutdown(self) -> None:
        """强制退出。

        设置 force_exit 标志并触发 shutdown event。
        实际的进程退出由 app.run() 在清理完成后执行。
        """
        logger.warning("Forcing immediate shutdown")
        self._force_exit = True
        self.cancel_active()
        self._request_shutdown()

    def request_graceful_shutdown(self) -> None:
        """程序化请求优雅退出。"""
        logger.info("Programmatic shutdown requested")
        self.cancel_active()
        self._request_shutdown()
