"""Pytest 配置和 fixtures。"""

from __future__ import annotations

import os
import signal
import sys
import time
from pathlib import Path

import psutil
import pytest

# 项目根目录
PROJECT_ROOT = Path(__file__).parent.parent

# 添加 src 目录到 Python 路径
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

# 模拟测试工具脚本
FAKE_TOOL_PATH = PROJECT_ROOT / "tests" / "fixtures" / "fake_tool.py"


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """临时 workspace 目录。"""
    ws = tmp_path / "workspace"
    ws.mkdir()
    return ws


@pytest.fixture
def fake_tool(workspace: Path):
    """构建模拟测试工具命令行的函数。"""

    def build(*extra: str) -> list[str]:
        return [
            sys.executable,
            str(FAKE_TOOL_PATH),
            "--workspace",
            str(workspace),
            *extra,
        ]

    return build


def read_pid(pidfile: Path, timeout: float = 5.0) -> int:
    """等待 pid 文件出现并读取。"""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if pidfile.exists():
            content = pidfile.read_text().strip()
            if content:
                return int(content)
        time.sleep(0.05)
    raise TimeoutError(f"pid file not written: {pidfile}")


def pid_alive(pid: int) -> bool:
    """进程是否仍在运行（僵尸进程视为已退出）。"""
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False


def kill_quietly(pid: int) -> None:
    """测试清理：强制终止进程，忽略已退出的情况。"""
    try:
        os.kill(pid, signal.SIGKILL)
    except ProcessLookupError:
        pass
