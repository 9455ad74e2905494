"""受监控子进程的注册表。

记录当前正在被 watchdog 监控的子进程，供中断信号处理时统一清理：
- SupervisionRegistry: 活动子进程的登记和管理
- 进程组级别的强制终止

子进程运行在独立的会话/进程组中，监控进程自身的进程组信号到达不了它们，
所以中断时需要通过注册表逐个终止。
"""

from __future__ import annotations

import logging
import os
import signal
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, Optional

__all__ = ["SupervisionRegistry", "SupervisedInfo"]

logger = logging.getLogger(__name__)


@dataclass
class SupervisedInfo:
    """受监控子进程的信息。

    Attributes:
        pid: 子进程 ID
        pgid: 子进程所在进程组 ID
        argv: 启动命令行
        created_at: 登记时间
    """

    pid: int
    pgid: int
    argv: list[str]
    created_at: datetime = field(default_factory=datetime.now)

    def __repr__(self) -> str:
        elapsed = (datetime.now() - self.created_at).total_seconds()
        program = self.argv[0] if self.argv else "?"
        return (
            f"SupervisedInfo(pid={self.pid}, "
            f"pgid={self.pgid}, "
            f"argv0={program}, "
            f"elapsed={elapsed:.1f}s)"
        )


class SupervisionRegistry:
    """活动子进程的注册表。

    线程安全：所有操作都是同步的，由调用方保证在同一个事件循环中调用。

    Example:
        ```python
        registry = SupervisionRegistry()
        registry.register(child.pid, child.pgid, child.argv)

        # 中断时
        killed = registry.kill_all()

        # 子进程回收后
        registry.unregister(child.pid)
        ```
    """

    def __init__(
        self,
        killpg: Optional[Callable[[int, int], None]] = None,
    ) -> None:
        """初始化注册表。

        Args:
            killpg: 发送进程组信号的函数（默认 os.killpg，测试时可替换）
        """
        self._children: Dict[int, SupervisedInfo] = {}
        self._killpg = killpg or os.killpg

    def register(self, pid: int, pgid: int, argv: list[str]) -> None:
        """登记子进程。

        Raises:
            ValueError: 如果 pid 已存在
        """
        if pid in self._children:
            raise ValueError(f"Process {pid} already registered")

        info = SupervisedInfo(pid=pid, pgid=pgid, argv=list(argv))
        self._children[pid] = info
        logger.debug(f"Registered child: {info}")

    def unregister(self, pid: int) -> bool:
        """注销子进程。

        Returns:
            是否成功注销（子进程存在则返回 True）
        """
        info = self._children.pop(pid, None)
        if info is None:
            return False
        logger.debug(f"Unregistered child: {info}")
        return True

    def get(self, pid: int) -> Optional[SupervisedInfo]:
        """获取子进程信息。"""
        return self._children.get(pid)

    def kill_all(self, sig: int = signal.SIGKILL) -> int:
        """向所有已登记子进程的进程组发送信号。

        进程组已经不存在时忽略。

        Returns:
            成功发送信号的进程组数量
        """
        signalled = 0
        seen_groups: set[int] = set()
        for info in list(self._children.values()):
            if info.pgid in seen_groups:
                continue
            seen_groups.add(info.pgid)
            try:
                self._killpg(info.pgid, sig)
                signalled += 1
                logger.info(f"Sent signal {sig} to process group pgid={info.pgid}")
            except ProcessLookupError:
                logger.debug(f"Process group already gone pgid={info.pgid}")
            except OSError as e:
                logger.warning(f"Failed to signal process group pgid={info.pgid}: {e}")
        return signalled

    def has_active(self) -> bool:
        """是否有登记中的子进程。"""
        return bool(self._children)

    def list_active(self) -> list[SupervisedInfo]:
        """列出登记中的子进程（按登记时间排序）。"""
        return sorted(self._children.values(), key=lambda x: x.created_at)

    def __len__(self) -> int:
        return len(self._children)

    def __contains__(self, pid: int) -> bool:
        return pid in self._children
