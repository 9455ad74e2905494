"""Watchdog 异常类。"""

from __future__ import annotations

__all__ = [
    "WatchdogError",
    "SpawnError",
    "ScanError",
    "LogSinkError",
    "KillError",
]


class WatchdogError(Exception):
    """Watchdog 基础异常。"""
    pass


class SpawnError(WatchdogError):
    """子进程无法启动（可执行文件不存在、工作目录无效）。

    致命错误，不重试。

    Attributes:
        argv: 启动的命令行
        cwd: 工作目录
    """

    def __init__(self, message: str, argv: list[str] | None = None, cwd: str = "") -> None:
        self.argv = list(argv or [])
        self.cwd = cwd
        super().__init__(message)


class ScanError(WatchdogError):
    """日志文件在运行中无法读取（例如被意外删除）。

    非致命错误，下一个扫描周期重试。

    Attributes:
        path: 日志文件路径
    """

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"{path}: {message}")


class LogSinkError(WatchdogError):
    """日志文件无法创建或打开（目录不可写、路径被占用）。

    致命错误，运行不会开始。

    Attributes:
        path: 日志文件路径
    """

    def __init__(self, path: str, message: str) -> None:
        self.path = path
        super().__init__(f"{path}: {message}")


class KillError(WatchdogError):
    """终止信号无法送达（进程已经不存在）。

    非致命错误，忽略即可。

    Attributes:
        pid: 目标进程 ID
    """

    def __init__(self, pid: int, message: str) -> None:
        self.pid = pid
        super().__init__(f"pid={pid}: {message}")
