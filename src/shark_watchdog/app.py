"""Shark Watchdog 应用入口。

包含命令行解析、日志配置和一次完整的监控运行。
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import re
import sys
from pathlib import Path

from .config import Config, clamp_poll_interval, get_config
from .errors import LogSinkError, SpawnError
from .registry import SupervisionRegistry
from .runtime import MarkerPattern, ProcessWatchdog
from .runtime.watchdog import default_tee
from .signal_manager import SignalManager

__all__ = ["build_parser", "run_watchdog", "main"]

logger = logging.getLogger(__name__)

# 子进程无法启动时的退出码（与 shell 的 command not found 一致）
EXIT_SPAWN_FAILED = 127
# 日志文件无法创建时的退出码
EXIT_LOG_FAILED = 1


def build_parser(config: Config | None = None) -> argparse.ArgumentParser:
    """构建命令行解析器。

    默认值来自环境变量配置，命令行参数优先。
    """
    config = config or get_config()
    parser = argparse.ArgumentParser(
        prog="shark-watchdog",
        description=(
            "Run a long build/test command, watch its output for a marker and "
            "kill the tool processes once the marker appears."
        ),
    )
    parser.add_argument(
        "--marker",
        default=config.marker,
        help="Text whose appearance ends the run early (env: SWD_MARKER)",
    )
    parser.add_argument(
        "--regex",
        action=argparse.BooleanOptionalAction,
        default=config.marker_regex,
        help="Treat --marker as a regular expression (env: SWD_MARKER_REGEX)",
    )
    parser.add_argument(
        "--workspace",
        type=Path,
        default=Path.cwd(),
        help="Working directory of the command and default kill filter",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=config.poll_interval,
        help="Seconds between log scans (env: SWD_POLL_INTERVAL)",
    )
    parser.add_argument(
        "--log-file",
        type=Path,
        default=None,
        help="Log the output is teed into (env: SWD_LOG_FILE)",
    )
    parser.add_argument(
        "--kill-filter",
        default=config.kill_filter,
        help="Command-line substring of processes to kill (env: SWD_KILL_FILTER)",
    )
    parser.add_argument(
        "--drain-timeout",
        type=float,
        default=config.drain_timeout,
        help="Seconds to wait for buffered output after exit (env: SWD_DRAIN_TIMEOUT)",
    )
    parser.add_argument(
        "--no-tee",
        dest="tee",
        action="store_false",
        default=config.tee,
        help="Do not copy the command's output to the terminal (env: SWD_TEE)",
    )
    parser.add_argument(
        "command",
        nargs=argparse.REMAINDER,
        help="Command to run, after '--'",
    )
    return parser


def parse_args(argv: list[str] | None = None, config: Config | None = None) -> argparse.Namespace:
    """解析并校验命令行参数。"""
    config = config or get_config()
    parser = build_parser(config)
    args = parser.parse_args(argv)

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if not command:
        parser.error("no command given; pass it after '--'")
    if not args.marker:
        parser.error("--marker is required (or set SWD_MARKER)")
    if args.poll_interval <= 0:
        parser.error("--poll-interval must be positive")

    args.command = command
    args.poll_interval = clamp_poll_interval(args.poll_interval)
    if args.log_file is None:
        args.log_file = config.resolve_log_file(args.workspace)
    if not args.kill_filter:
        args.kill_filter = config.resolve_kill_filter(args.workspace)
    return args


async def run_watchdog(args: argparse.Namespace) -> int:
    """执行一次监控运行。

    安装信号管理器（中断时全量清理），运行 watchdog 状态机，
    记录运行是自然结束还是被 watchdog 提前终止。

    Returns:
        进程退出码
    """
    registry = SupervisionRegistry()
    signal_manager = SignalManager(registry=registry)

    try:
        pattern = MarkerPattern(args.marker, regex=args.regex)
    except (ValueError, re.error) as e:
        logger.error(f"Invalid marker {args.marker!r}: {e}")
        return 2

    watchdog = ProcessWatchdog(
        workspace=args.workspace,
        log_path=args.log_file,
        kill_filter=args.kill_filter,
        drain_timeout=args.drain_timeout,
        tee=default_tee() if args.tee else None,
        registry=registry,
    )

    await signal_manager.start()
    try:
        report = await watchdog.supervise(
            args.command,
            pattern,
            poll_interval=args.poll_interval,
        )
    except SpawnError as e:
        logger.error(f"Failed to start {args.command[0]}: {e}")
        return EXIT_SPAWN_FAILED
    except LogSinkError as e:
        logger.error(f"Cannot prepare log file: {e}")
        return EXIT_LOG_FAILED
    finally:
        await signal_manager.stop()

    logger.info(report.summary())
    if report.scan_error:
        logger.error(f"Log could not be scanned: {report.scan_error}")
    return report.exit_status


def configure_logging(config: Config) -> None:
    """配置日志输出。"""
    log_handlers: list[logging.Handler] = []

    if config.log_debug and config.debug_log_file:
        # LOG_DEBUG 模式：输出到临时文件
        file_handler = logging.FileHandler(config.debug_log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(file_handler)
        log_level = logging.DEBUG
    else:
        # 默认模式：输出到 stderr
        stderr_handler = logging.StreamHandler(sys.stderr)
        stderr_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
        )
        log_handlers.append(stderr_handler)
        log_level = logging.INFO

    # 配置 root logger（第三方库）为 WARNING，减少噪音
    logging.basicConfig(
        level=logging.WARNING,
        handlers=log_handlers,
    )
    # 只对 shark_watchdog 命名空间启用详细日志
    logging.getLogger("shark_watchdog").setLevel(log_level)


def main(argv: list[str] | None = None) -> None:
    """主入口点。"""
    config = get_config()
    configure_logging(config)
    args = parse_args(argv, config)
    logger.debug(f"Starting with {config}")
    sys.exit(asyncio.run(run_watchdog(args)))


if __name__ == "__main__":
    main()
