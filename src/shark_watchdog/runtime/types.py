"""Watchdog runtime types.

Defines the marker pattern, run states, match results and the handles a
supervised run passes around.
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from pathlib import Path

__all__ = [
    "MarkerPattern",
    "MatchResult",
    "RunState",
    "ChildProcess",
    "RunReport",
    "exit_status_from_returncode",
]


@dataclass(frozen=True)
class MarkerPattern:
    """Text whose appearance in the output means the rest is uninteresting.

    Matching works on raw bytes so undecodable output never breaks a scan.

    Attributes:
        text: Literal substring, or a regular expression when ``regex`` is set
        regex: Interpret ``text`` as a regular expression
    """

    text: str
    regex: bool = False

    def __post_init__(self) -> None:
        if not self.text:
            raise ValueError("marker pattern must not be empty")
        # Fail early on a bad expression
        self.compiled

    @cached_property
    def compiled(self) -> re.Pattern[bytes]:
        source = self.text.encode("utf-8")
        if not self.regex:
            source = re.escape(source)
        return re.compile(source)

    def matches(self, data: bytes) -> bool:
        return self.compiled.search(data) is not None

    def __str__(self) -> str:
        kind = "regex" if self.regex else "literal"
        return f"{kind}:{self.text}"


class MatchResult(str, Enum):
    """Outcome of polling a supervised run."""

    MATCH_FOUND = "match_found"
    EXITED_NO_MATCH = "exited_no_match"


class RunState(str, Enum):
    """Lifecycle of a single supervised run.

    CREATED -> RUNNING -> MATCH_FOUND -> KILLING -> REAPED
    CREATED -> RUNNING -> EXITED_NATURALLY -> REAPED
    """

    CREATED = "created"
    RUNNING = "running"
    MATCH_FOUND = "match_found"
    KILLING = "killing"
    EXITED_NATURALLY = "exited_naturally"
    REAPED = "reaped"


@dataclass
class ChildProcess:
    """A spawned external program owned by one watchdog.

    Attributes:
        process: asyncio process handle
        pgid: Process group the child leads
        argv: Command line it was started with
        cwd: Working directory
        log_path: LogSink the combined output is duplicated into
        pump_task: Task teeing stdout/stderr to the terminal and the log
        exit_waiter: Task resolving to the return code once reaped
    """

    process: asyncio.subprocess.Process
    pgid: int
    argv: list[str]
    cwd: Path
    log_path: Path
    pump_task: asyncio.Task[int]
    exit_waiter: asyncio.Future[int]

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def alive(self) -> bool:
        """Non-blocking liveness probe."""
        return self.process.returncode is None

    @property
    def returncode(self) -> int | None:
        return self.process.returncode


def exit_status_from_returncode(returncode: int) -> int:
    """Map an asyncio return code to a shell-style exit status.

    Negative values mean "killed by signal N" and become ``128 + N``.
    """
    if returncode < 0:
        return 128 - returncode
    return returncode


@dataclass
class RunReport:
    """Summary of a supervised run.

    Attributes:
        result: Whether the marker was seen before the child exited
        returncode: Raw return code of the child
        exit_status: Status the caller should exit with
        log_path: Log file left on disk for post-mortem inspection
        killed_pids: Processes signalled after the marker matched
        cut_short: The marker matched while the child was still running
        scan_error: Last scan failure if the log stayed unreadable past exit
        elapsed: Wall-clock seconds from spawn to reap
    """

    result: MatchResult
    returncode: int
    exit_status: int
    log_path: Path
    killed_pids: list[int] = field(default_factory=list)
    cut_short: bool = False
    scan_error: str | None = None
    elapsed: float = 0.0

    def summary(self) -> str:
        if self.cut_short:
            how = f"cut short by watchdog (killed {len(self.killed_pids)} process(es))"
        else:
            how = "exited naturally"
        return (
            f"Supervised run {how}: returncode={self.returncode} "
            f"exit_status={self.exit_status} elapsed={self.elapsed:.1f}s "
            f"log={self.log_path}"
        )
