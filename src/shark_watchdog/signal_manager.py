"""信号管理模块。

把中断信号转换为整体取消操作：
- SIGINT / SIGTERM: 强制终止所有受监控子进程的进程组，
  然后强制终止监控进程自身所在的进程组

与命中标记时只终止筛选出的工具进程不同，中断路径是全量清理，
确保监控进程退出后没有任何后代进程残留。
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import sys
from typing import Callable, Optional

from .registry import SupervisionRegistry

__all__ = ["SignalManager"]

logger = logging.getLogger(__name__)

# 处理的中断信号
INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class SignalManager:
    """信号管理器。

    Example:
        ```python
        registry = SupervisionRegistry()
        signal_manager = SignalManager(registry)

        async def main():
            await signal_manager.start()
            try:
                await watchdog.supervise(...)
            finally:
                await signal_manager.stop()

        asyncio.run(main())
        ```

    Attributes:
        registry: 受监控子进程注册表
        kill_own_group: 是否在清理子进程后终止自身进程组
    """

    def __init__(
        self,
        registry: SupervisionRegistry,
        kill_own_group: bool = True,
        on_interrupt: Optional[Callable[[int], None]] = None,
        killpg: Optional[Callable[[int, int], None]] = None,
        getpgrp: Optional[Callable[[], int]] = None,
    ) -> None:
        """初始化信号管理器。

        Args:
            registry: 受监控子进程注册表
            kill_own_group: 是否终止自身进程组（默认 True）
            on_interrupt: 收到中断信号时的回调（参数为信号编号）
            killpg: 发送进程组信号的函数（默认 os.killpg，测试时可替换）
            getpgrp: 获取自身进程组的函数（默认 os.getpgrp，测试时可替换）
        """
        self.registry = registry
        self.kill_own_group = kill_own_group
        self._on_interrupt = on_interrupt
        self._killpg = killpg or os.killpg
        self._getpgrp = getpgrp or os.getpgrp

        # 内部状态
        self._interrupted_by: Optional[int] = None
        self._interrupt_event: Optional[asyncio.Event] = None
        self._running: bool = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    @property
    def is_interrupted(self) -> bool:
        """是否已收到中断信号。"""
        return self._interrupted_by is not None

    @property
    def interrupted_by(self) -> Optional[int]:
        """收到的中断信号编号。"""
        return self._interrupted_by

    async def start(self) -> None:
        """启动信号监听。

        必须在 asyncio 事件循环中调用。
        """
        if self._running:
            logger.warning("SignalManager already running")
            return

        self._loop = asyncio.get_running_loop()
        self._interrupt_event = asyncio.Event()
        self._running = True

        if sys.platform == "win32":
            logger.warning("Process group signals are not supported on Windows")
            return

        for sig in INTERRUPT_SIGNALS:
            self._loop.add_signal_handler(sig, self._handle_interrupt, sig)
        logger.debug(
            f"Signal handlers installed (kill_own_group={self.kill_own_group})"
        )

    async def stop(self) -> None:
        """停止信号监听，恢复原始处理器。"""
        if not self._running:
            return

        self._running = False

        if sys.platform != "win32" and self._loop:
            for sig in INTERRUPT_SIGNALS:
                try:
                    self._loop.remove_signal_handler(sig)
                except (ValueError, RuntimeError) as e:
                    logger.debug(f"Error removing signal handler {sig}: {e}")

        logger.debug("Signal handlers removed")

    async def wait_for_interrupt(self) -> None:
        """等待中断信号。"""
        if self._interrupt_event:
            await self._interrupt_event.wait()

    def _handle_interrupt(self, signum: int) -> None:
        """处理中断信号。

        1. 强制终止所有已登记子进程的进程组
        2. 调用回调
        3. 强制终止自身进程组（包含监控进程本身）
        """
        name = signal.Signals(signum).name
        logger.warning(f"{name} received, killing all supervised processes")
        self._interrupted_by = signum

        count = self.registry.kill_all(signal.SIGKILL)
        logger.info(f"Killed {count} supervised process group(s)")

        if self._on_interrupt:
            try:
                self._on_interrupt(signum)
            except Exception as e:
                logger.warning(f"Error in interrupt callback: {e}")

        if self._interrupt_event and self._loop:
            self._loop.call_soon_threadsafe(self._interrupt_event.set)

        if self.kill_own_group:
            own_pgid = self._getpgrp()
            logger.warning(f"Killing own process group pgid={own_pgid}")
            for handler in logging.getLogger().handlers:
                handler.flush()
            self._killpg(own_pgid, signal.SIGKILL)
