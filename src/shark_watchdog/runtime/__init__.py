"""Runtime module for supervised process execution.

This module spawns the watched tool in its own process group, tees its
output into a log, polls that log for a marker and cuts the run short.
"""

from __future__ import annotations

from .log_sink import LogSink
from .process_runner import ProcessRunner, ProcessSpec
from .process_table import ProcessEntry, ProcessTable
from .types import ChildProcess, MarkerPattern, MatchResult, RunReport, RunState
from .watchdog import ProcessWatchdog

__all__ = [
    "ChildProcess",
    "LogSink",
    "MarkerPattern",
    "MatchResult",
    "ProcessEntry",
    "ProcessRunner",
    "ProcessSpec",
    "ProcessTable",
    "ProcessWatchdog",
    "RunReport",
    "RunState",
]
