"""Shark Watchdog - CI 测试进程监控器。

启动耗时的构建/测试工具，监控其输出中的标记，出现标记后提前终止。

环境变量:
    SWD_POLL_INTERVAL: 日志扫描间隔 (默认 2.0s)
    SWD_LOG_FILE: 子进程输出日志路径
    SWD_MARKER: 默认标记模式
    SWD_LOG_DEBUG: 日志调试模式 (默认 false)

用法:
    shark-watchdog --marker "[test]" --workspace "$WORKSPACE" -- sbt test
"""

__version__ = "0.1.0"

from .app import main

__all__ = ["__version__", "main"]
