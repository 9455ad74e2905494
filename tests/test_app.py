"""应用入口测试。

测试覆盖：
- 命令行解析与环境变量默认值
- 一次完整运行的退出码（命中标记、自然退出、启动失败、非法标记）
- 端到端：作为独立进程运行 CLI，包括中断时的全量清理
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import time
from pathlib import Path

import pytest
from conftest import SRC_DIR, kill_quietly, pid_alive, read_pid

from shark_watchdog.app import EXIT_LOG_FAILED, EXIT_SPAWN_FAILED, parse_args, run_watchdog
from shark_watchdog.config import DEFAULT_LOG_NAME, MAX_POLL_INTERVAL, Config

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")


def _args(workspace: Path, *command: str, config: Config | None = None, extra: tuple = ()):
    return parse_args(
        [
            "--marker", "[test]",
            "--workspace", str(workspace),
            "--poll-interval", "0.2",
            "--no-tee",
            *extra,
            "--",
            *command,
        ],
        config or Config(),
    )


# =============================================================================
# 参数解析
# =============================================================================


class TestParseArgs:
    """命令行解析测试。"""

    def test_command_after_separator(self, workspace: Path):
        args = _args(workspace, "sbt", "-Dfoo=bar", "test")
        assert args.command == ["sbt", "-Dfoo=bar", "test"]
        assert args.marker == "[test]"
        assert args.tee is False

    def test_defaults_resolved_from_workspace(self, workspace: Path):
        args = _args(workspace, "make")
        assert args.log_file == workspace / DEFAULT_LOG_NAME
        assert args.kill_filter == str(workspace.resolve())

    def test_missing_command_is_usage_error(self, workspace: Path):
        with pytest.raises(SystemExit) as exc_info:
            parse_args(["--marker", "[test]", "--workspace", str(workspace)], Config())
        assert exc_info.value.code == 2

    def test_missing_marker_is_usage_error(self, workspace: Path):
        with pytest.raises(SystemExit) as exc_info:
            parse_args(["--workspace", str(workspace), "--", "make"], Config())
        assert exc_info.value.code == 2

    def test_marker_from_config(self, workspace: Path):
        args = parse_args(
            ["--workspace", str(workspace), "--", "make"],
            Config(marker="BUILD OK", marker_regex=True),
        )
        assert args.marker == "BUILD OK"
        assert args.regex is True

    def test_no_regex_overrides_config(self, workspace: Path):
        args = _args(workspace, "make", config=Config(marker_regex=True), extra=("--no-regex",))
        assert args.regex is False

    def test_regex_flag(self, workspace: Path):
        args = _args(workspace, "make", extra=("--regex",))
        assert args.regex is True

    def test_non_positive_interval_is_usage_error(self, workspace: Path):
        with pytest.raises(SystemExit):
            _args(workspace, "make", extra=("--poll-interval", "0"))

    def test_interval_clamped(self, workspace: Path):
        args = _args(workspace, "make", extra=("--poll-interval", "3600"))
        assert args.poll_interval == MAX_POLL_INTERVAL

    def test_explicit_log_file_and_filter(self, workspace: Path, tmp_path: Path):
        log = tmp_path / "elsewhere.log"
        args = _args(
            workspace,
            "make",
            extra=("--log-file", str(log), "--kill-filter", "/opt/build"),
        )
        assert args.log_file == log
        assert args.kill_filter == "/opt/build"

    def test_config_log_file_and_filter(self, workspace: Path):
        args = _args(
            workspace,
            "make",
            config=Config(log_file="/var/tmp/swd.log", kill_filter="classpath-x"),
        )
        assert args.log_file == Path("/var/tmp/swd.log")
        assert args.kill_filter == "classpath-x"


# =============================================================================
# 单次运行
# =============================================================================


class TestRunWatchdog:
    """run_watchdog 退出码测试。"""

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_marker_exits_zero(self, workspace: Path, fake_tool):
        args = _args(
            workspace,
            *fake_tool("--marker", "[test]", "--marker-after", "0.3", "--duration", "60"),
        )
        assert await run_watchdog(args) == 0
        assert "[test] progress" in args.log_file.read_text()

    @pytest.mark.asyncio
    @pytest.mark.timeout(30)
    async def test_natural_exit_code_propagates(self, workspace: Path, fake_tool):
        args = _args(workspace, *fake_tool("--duration", "0.3", "--exit-code", "4"))
        assert await run_watchdog(args) == 4

    @pytest.mark.asyncio
    async def test_spawn_failure(self, workspace: Path):
        args = _args(workspace, "nonexistent_command_xyz_123")
        assert await run_watchdog(args) == EXIT_SPAWN_FAILED

    @pytest.mark.asyncio
    async def test_missing_workspace_fails_to_spawn(self, tmp_path: Path):
        missing = tmp_path / "no_such_ws"
        args = _args(missing, "true")

        assert await run_watchdog(args) == EXIT_SPAWN_FAILED
        assert not missing.exists()

    @pytest.mark.asyncio
    async def test_log_file_cannot_be_created(self, workspace: Path, tmp_path: Path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        args = _args(workspace, "true", extra=("--log-file", str(blocker / "run.log")))

        assert await run_watchdog(args) == EXIT_LOG_FAILED

    @pytest.mark.asyncio
    async def test_invalid_regex(self, workspace: Path):
        args = _args(workspace, "true", extra=("--regex",))
        args.marker = "(["
        assert await run_watchdog(args) == 2


# =============================================================================
# 端到端
# =============================================================================


def _cli(workspace: Path, *command: str) -> subprocess.Popen:
    """在独立会话中启动 CLI，使其自身进程组与 pytest 隔离。"""
    env = os.environ.copy()
    env["PYTHONPATH"] = os.pathsep.join(
        p for p in (str(SRC_DIR), env.get("PYTHONPATH")) if p
    )
    return subprocess.Popen(
        [
            sys.executable, "-m", "shark_watchdog",
            "--marker", "[test]",
            "--workspace", str(workspace),
            "--poll-interval", "0.2",
            "--no-tee",
            "--",
            *command,
        ],
        cwd=workspace,
        env=env,
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.PIPE,
        start_new_session=True,
    )


def _wait_dead(pid: int, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if not pid_alive(pid):
            return True
        time.sleep(0.05)
    return False


@pytest.mark.integration
@pytest.mark.timeout(60)
class TestCommandLine:
    """CLI 端到端测试。"""

    def test_marker_run_exits_zero(self, workspace: Path, fake_tool):
        pidfile = workspace / "tool.pid"
        cli = _cli(
            workspace,
            *fake_tool(
                "--marker", "[test]",
                "--marker-after", "0.5",
                "--duration", "60",
                "--pidfile", str(pidfile),
            ),
        )
        _, stderr = cli.communicate(timeout=30)

        assert cli.returncode == 0, stderr.decode(errors="replace")
        assert b"cut short by watchdog" in stderr
        assert _wait_dead(read_pid(pidfile))

    def test_exit_status_of_child_surfaces(self, workspace: Path, fake_tool):
        cli = _cli(workspace, *fake_tool("--duration", "0.3", "--exit-code", "5"))
        _, stderr = cli.communicate(timeout=30)
        assert cli.returncode == 5
        assert b"exited naturally" in stderr

    def test_sigint_kills_everything(self, workspace: Path, fake_tool):
        """中断时子进程组和 CLI 自身都被强制终止。"""
        pidfile = workspace / "tool.pid"
        cli = _cli(
            workspace,
            *fake_tool("--duration", "60", "--pidfile", str(pidfile)),
        )
        tool_pid = None
        try:
            tool_pid = read_pid(pidfile, timeout=15)
            assert pid_alive(tool_pid)

            cli.send_signal(signal.SIGINT)
            cli.wait(timeout=15)

            assert cli.returncode == -signal.SIGKILL
            assert _wait_dead(tool_pid)
        finally:
            if cli.poll() is None:
                cli.kill()
                cli.wait()
            if tool_pid is not None:
                kill_quietly(tool_pid)
