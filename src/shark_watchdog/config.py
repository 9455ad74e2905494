"""SWD 环境变量配置管理。

环境变量:
    SWD_POLL_INTERVAL: 日志扫描间隔（秒）
        - 默认 2.0 秒
        - 限制在 0.05-60 秒范围

    SWD_DRAIN_TIMEOUT: 子进程退出后等待输出管道排空的最长时间（秒）
        - 默认 5.0 秒

    SWD_LOG_FILE: 子进程输出日志文件路径
        - 空/未设置 = <workspace>/watchdog_test.log

    SWD_MARKER: 默认标记模式（命令行未指定 --marker 时使用）

    SWD_MARKER_REGEX: 是否把标记当作正则表达式
        - true/1/yes = 正则
        - false/0/no = 字面子串 (默认)

    SWD_KILL_FILTER: 命中标记后筛选待终止进程的命令行子串
        - 空/未设置 = 使用 workspace 目录路径

    SWD_TEE: 是否把子进程输出同时写到终端
        - true/1/yes = 写 (默认)
        - false/0/no = 只写日志文件

    SWD_LOG_DEBUG: 日志调试模式
        - true/1/yes = 开启 (日志输出到临时文件)
        - false/0/no = 关闭 (默认，日志输出到 stderr)
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

__all__ = [
    "Config",
    "load_config",
    "get_config",
    "reload_config",
    "DEFAULT_POLL_INTERVAL",
    "DEFAULT_DRAIN_TIMEOUT",
    "DEFAULT_LOG_NAME",
]

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_DRAIN_TIMEOUT = 5.0
DEFAULT_LOG_NAME = "watchdog_test.log"

# 扫描间隔允许范围
MIN_POLL_INTERVAL = 0.05
MAX_POLL_INTERVAL = 60.0


def _parse_bool(value: str | None, default: bool = False) -> bool:
    """解析布尔值环境变量。"""
    if value is None:
        return default
    return value.lower() in ("true", "1", "yes", "on")


def _parse_float(value: str | None, default: float) -> float:
    """解析浮点数环境变量，无效值返回默认值。"""
    if not value:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _parse_poll_interval(value: str | None) -> float:
    """解析扫描间隔环境变量。"""
    interval = _parse_float(value, DEFAULT_POLL_INTERVAL)
    return clamp_poll_interval(interval)


def clamp_poll_interval(interval: float) -> float:
    """把扫描间隔限制在允许范围内。"""
    return max(MIN_POLL_INTERVAL, min(interval, MAX_POLL_INTERVAL))


def _parse_drain_timeout(value: str | None) -> float:
    """解析管道排空超时，负数按 0 处理。"""
    return max(0.0, _parse_float(value, DEFAULT_DRAIN_TIMEOUT))


def _parse_optional_str(value: str | None) -> str | None:
    """空字符串视为未设置。"""
    if value is None or not value.strip():
        return None
    return value.strip()


@dataclass
class Config:
    """SWD 配置。

    Attributes:
        poll_interval: 日志扫描间隔（秒）
        drain_timeout: 子进程退出后等待输出排空的最长时间（秒）
        log_file: 子进程输出日志路径（None = workspace 下默认文件）
        marker: 默认标记模式
        marker_regex: 标记是否为正则表达式
        kill_filter: 命令行筛选子串（None = workspace 路径）
        tee: 是否把输出同时写到终端
        log_debug: 日志调试模式（输出到临时文件）
        debug_log_file: 调试日志路径（当 log_debug=True 时自动设置）
    """

    poll_interval: float = DEFAULT_POLL_INTERVAL
    drain_timeout: float = DEFAULT_DRAIN_TIMEOUT
    log_file: str | None = None
    marker: str | None = None
    marker_regex: bool = False
    kill_filter: str | None = None
    tee: bool = True
    log_debug: bool = False
    debug_log_file: str | None = None

    def resolve_log_file(self, workspace: Path) -> Path:
        """计算实际的日志文件路径。"""
        if self.log_file:
            return Path(self.log_file)
        return Path(workspace) / DEFAULT_LOG_NAME

    def resolve_kill_filter(self, workspace: Path) -> str:
        """计算实际的命令行筛选子串。"""
        if self.kill_filter:
            return self.kill_filter
        return str(Path(workspace).resolve())

    def __repr__(self) -> str:
        return (
            f"Config(poll_interval={self.poll_interval}, "
            f"drain_timeout={self.drain_timeout}, "
            f"log_file={self.log_file}, "
            f"marker={self.marker!r}, "
            f"marker_regex={self.marker_regex}, "
            f"kill_filter={self.kill_filter}, "
            f"tee={self.tee}, "
            f"log_debug={self.log_debug}, "
            f"debug_log_file={self.debug_log_file})"
        )


def _generate_log_file_path() -> str:
    """生成调试日志文件路径。

    Returns:
        临时目录下的日志文件绝对路径
    """
    log_dir = Path(tempfile.gettempdir()) / "shark-watchdog"
    log_dir.mkdir(parents=True, exist_ok=True)

    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    log_file = log_dir / f"swd_debug_{timestamp}.log"

    return str(log_file.resolve())


def load_config() -> Config:
    """从环境变量加载配置。"""
    log_debug = _parse_bool(os.environ.get("SWD_LOG_DEBUG"), default=False)
    debug_log_file = _generate_log_file_path() if log_debug else None

    return Config(
        poll_interval=_parse_poll_interval(os.environ.get("SWD_POLL_INTERVAL")),
        drain_timeout=_parse_drain_timeout(os.environ.get("SWD_DRAIN_TIMEOUT")),
        log_file=_parse_optional_str(os.environ.get("SWD_LOG_FILE")),
        marker=_parse_optional_str(os.environ.get("SWD_MARKER")),
        marker_regex=_parse_bool(os.environ.get("SWD_MARKER_REGEX"), default=False),
        kill_filter=_parse_optional_str(os.environ.get("SWD_KILL_FILTER")),
        tee=_parse_bool(os.environ.get("SWD_TEE"), default=True),
        log_debug=log_debug,
        debug_log_file=debug_log_file,
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
