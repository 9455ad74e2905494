"""Supervise a long-running build/test tool and cut it short on a marker.

The watchdog spawns the tool as a new process group leader, tees its output
into a LogSink and polls that log every ``poll_interval`` seconds. Once the
marker shows up the remaining output is uninteresting: every process in the
child's group whose command line carries the workspace marker is SIGKILLed
individually, and the child is then reaped.

State machine for one run:
    CREATED -> RUNNING -> MATCH_FOUND -> KILLING -> REAPED
    CREATED -> RUNNING -> MATCH_FOUND -> REAPED      (marker only seen after exit)
    CREATED -> RUNNING -> EXITED_NATURALLY -> REAPED

Only one child is tracked at a time; ``await_exit`` must be called exactly
once per ``start``.
"""

from __future__ import annotations

import asyncio
import logging
import sys
import time
from pathlib import Path
from typing import BinaryIO

from ..config import DEFAULT_DRAIN_TIMEOUT, DEFAULT_LOG_NAME, DEFAULT_POLL_INTERVAL
from ..errors import KillError, ScanError, SpawnError, WatchdogError
from ..registry import SupervisionRegistry
from .log_sink import LogSink
from .process_runner import ProcessRunner, ProcessSpec
from .process_table import ProcessTable
from .types import (
    ChildProcess,
    MarkerPattern,
    MatchResult,
    RunReport,
    RunState,
    exit_status_from_returncode,
)

__all__ = ["ProcessWatchdog", "default_tee"]

logger = logging.getLogger(__name__)

# Seconds between returncode checks while reaping
REAP_CHECK_INTERVAL = 0.05


class ProcessWatchdog:
    """Runs one external command at a time and stops it early on a marker.

    Example:
        watchdog = ProcessWatchdog(workspace=Path("/ci/workspace"))
        report = await watchdog.supervise(
            ["sbt", "test"],
            MarkerPattern("[test]"),
            poll_interval=2.0,
        )
        print(report.summary())

    Attributes:
        workspace: Default working directory of the child
        log_path: LogSink location
        kill_filter: Command-line substring a group member must contain to be
            killed on a marker match
        drain_timeout: Longest wait for the output pump after the child exits
        scan_error: Last scan failure that outlived the child, if any
    """

    def __init__(
        self,
        workspace: Path,
        *,
        log_path: Path | None = None,
        kill_filter: str | None = None,
        drain_timeout: float = DEFAULT_DRAIN_TIMEOUT,
        tee: BinaryIO | None = None,
        runner: ProcessRunner | None = None,
        process_table: ProcessTable | None = None,
        registry: SupervisionRegistry | None = None,
    ) -> None:
        """Initialize the watchdog.

        Args:
            workspace: Working directory, also the default kill filter
            log_path: LogSink location (default: <workspace>/watchdog_test.log)
            kill_filter: Override for the command-line substring filter
            drain_timeout: Seconds to wait for buffered output after exit
            tee: Terminal stream to duplicate output into (None = log only)
            runner: Process runner (default: ProcessRunner())
            process_table: Host process listing (default: ProcessTable())
            registry: Registry the child is announced to for interrupt cleanup
        """
        self.workspace = Path(workspace)
        self.log_path = Path(log_path) if log_path else self.workspace / DEFAULT_LOG_NAME
        self.kill_filter = kill_filter or str(self.workspace.resolve())
        self.drain_timeout = drain_timeout
        self.tee = tee
        self.runner = runner or ProcessRunner()
        self.process_table = process_table or ProcessTable()
        self.registry = registry

        self.scan_error: str | None = None
        self._sink = LogSink(self.log_path)
        self._child: ChildProcess | None = None
        self._state = RunState.CREATED

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def child(self) -> ChildProcess | None:
        return self._child

    async def start(
        self,
        argv: list[str],
        cwd: Path | None = None,
    ) -> ChildProcess:
        """Spawn ``argv`` as a new process group leader.

        The log is removed and recreated empty before the spawn so it is
        readable before polling starts and never holds a stale marker.

        Raises:
            SpawnError: If the executable or working directory is invalid
            LogSinkError: If the log cannot be created
            WatchdogError: If a child is already tracked
        """
        if self._child is not None:
            raise WatchdogError(
                f"already supervising pid={self._child.pid}; await_exit() it first"
            )

        cwd = Path(cwd) if cwd else self.workspace
        # Checked before the log is reset, which may create its parent directories
        if not cwd.is_dir():
            raise SpawnError(f"working directory does not exist: {cwd}", list(argv), str(cwd))
        self._sink.reset()
        self.scan_error = None
        self._state = RunState.CREATED

        # Opened before the spawn so writes never recreate a log removed later
        await self._sink.open_writer()
        try:
            process = await self.runner.spawn(ProcessSpec(argv=list(argv), cwd=cwd))
        except BaseException:
            await self._sink.close()
            raise

        # The child leads its own group, so pgid == pid
        pgid = process.pid
        pump_task = asyncio.create_task(
            self.runner.pump_output(process, self._sink, self.tee),
            name=f"watchdog-pump-{process.pid}",
        )
        exit_waiter = asyncio.ensure_future(process.wait())

        child = ChildProcess(
            process=process,
            pgid=pgid,
            argv=list(argv),
            cwd=cwd,
            log_path=self.log_path,
            pump_task=pump_task,
            exit_waiter=exit_waiter,
        )
        self._child = child
        self._state = RunState.RUNNING
        if self.registry is not None:
            self.registry.register(child.pid, child.pgid, child.argv)

        logger.info(f"Supervising pid={child.pid} pgid={pgid} log={self.log_path}")
        return child

    async def poll_until_marker_or_exit(
        self,
        child: ChildProcess,
        pattern: MarkerPattern,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
    ) -> MatchResult:
        """Sample the log every ``poll_interval`` until the marker or exit.

        Each iteration probes liveness first and scans second, so when the
        child is seen dead the following scan is the final one and covers
        everything it flushed before exiting. The sleep wakes early on exit.

        A failed scan is retried next interval; if the log is still
        unreadable after the child exited, the error is kept in
        ``scan_error`` and the run counts as EXITED_NO_MATCH.
        """
        self._require_current(child)
        if poll_interval <= 0:
            raise ValueError("poll_interval must be positive")

        logger.debug(f"Polling pid={child.pid} for {pattern} every {poll_interval}s")
        while True:
            await asyncio.wait({child.exit_waiter}, timeout=poll_interval)

            exited = not child.alive
            if exited:
                await self._wait_for_pump(child)

            try:
                matched = await self._sink.scan(pattern)
            except ScanError as e:
                if not exited:
                    logger.warning(f"Log scan failed, retrying next interval: {e}")
                    continue
                self.scan_error = str(e)
                logger.error(f"Log unreadable after child exit: {e}")
                matched = False

            if matched:
                self._state = RunState.MATCH_FOUND
                logger.info(f"Marker {pattern} found in output of pid={child.pid}")
                return MatchResult.MATCH_FOUND

            if exited:
                self._state = RunState.EXITED_NATURALLY
                logger.info(
                    f"pid={child.pid} exited with returncode={child.returncode} "
                    f"before marker {pattern} appeared"
                )
                return MatchResult.EXITED_NO_MATCH

    def kill_process_group(self, child: ChildProcess) -> list[int]:
        """SIGKILL the tool processes in the child's group.

        Only group members whose command line contains ``kill_filter`` are
        signalled; other members (helpers, wrappers) are left alone and exit
        once their tool is gone.

        Returns:
            Pids that were signalled
        """
        self._require_current(child)
        self._state = RunState.KILLING

        members = self.process_table.group_members(child.pgid, contains=self.kill_filter)
        if not members:
            logger.warning(
                f"No process in pgid={child.pgid} matches {self.kill_filter!r}; "
                f"waiting for natural exit"
            )

        killed: list[int] = []
        for entry in members:
            try:
                self.process_table.kill(entry)
            except KillError as e:
                logger.debug(f"Ignoring kill failure: {e}")
                continue
            killed.append(entry.pid)

        logger.info(f"Killed {len(killed)} process(es) in pgid={child.pgid}: {killed}")
        return killed

    async def await_exit(self, child: ChildProcess) -> int:
        """Block until the child is reaped and its output fully drained.

        Returns:
            The child's return code

        Raises:
            WatchdogError: If ``child`` is not the tracked child (e.g. this is
                a second call for the same run)
        """
        self._require_current(child)

        # process.wait() also waits for the pipes to close, which a descendant
        # holding stdout can delay indefinitely; the returncode is set on reap.
        while child.alive:
            await asyncio.wait({child.exit_waiter}, timeout=REAP_CHECK_INTERVAL)
        returncode = child.returncode

        if not await self._wait_for_pump(child):
            logger.warning(
                f"Output pipe of pid={child.pid} still open after "
                f"{self.drain_timeout}s, abandoning it"
            )
            child.pump_task.cancel()
        try:
            await child.pump_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning(f"Output pump of pid={child.pid} failed: {e}")
        if not child.exit_waiter.done():
            child.exit_waiter.cancel()
        await self._sink.close()

        if self.registry is not None:
            self.registry.unregister(child.pid)
        self._child = None
        self._state = RunState.REAPED
        logger.debug(f"Reaped pid={child.pid} returncode={returncode}")
        return returncode

    async def supervise(
        self,
        argv: list[str],
        pattern: MarkerPattern,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        cwd: Path | None = None,
    ) -> RunReport:
        """Run the whole state machine once and report the outcome.

        The child is always reaped. If polling raises or the caller is
        cancelled, the child's whole group is terminated first.
        """
        started = time.monotonic()
        child = await self.start(argv, cwd)
        result: MatchResult | None = None
        killed: list[int] = []
        cut_short = False

        try:
            result = await self.poll_until_marker_or_exit(child, pattern, poll_interval)
            if result is MatchResult.MATCH_FOUND:
                # A marker seen only by the final scan after exit cuts nothing short
                cut_short = child.alive
                if cut_short:
                    killed = self.kill_process_group(child)
                else:
                    logger.info(f"Marker {pattern} seen after pid={child.pid} already exited")
        finally:
            returncode = await self._safe_cleanup(child, abandon=result is None)

        if cut_short:
            exit_status = 0
        else:
            exit_status = exit_status_from_returncode(returncode)

        return RunReport(
            result=result,
            returncode=returncode,
            exit_status=exit_status,
            log_path=self.log_path,
            killed_pids=killed,
            cut_short=cut_short,
            scan_error=self.scan_error,
            elapsed=time.monotonic() - started,
        )

    async def _safe_cleanup(self, child: ChildProcess, abandon: bool) -> int:
        """Reap the child, shielded from cancellation.

        Args:
            child: The tracked child
            abandon: Terminate the child's group before reaping
        """
        cleanup = asyncio.ensure_future(self._cleanup(child, abandon))
        try:
            return await asyncio.shield(cleanup)
        except asyncio.CancelledError:
            # Let the reap finish before propagating
            await asyncio.wait({cleanup})
            raise

    async def _cleanup(self, child: ChildProcess, abandon: bool) -> int:
        if abandon and child.alive:
            logger.warning(f"Supervision abandoned, terminating pgid={child.pgid}")
            await self.runner.terminate_group(child.process, child.pgid)
        return await self.await_exit(child)

    async def _wait_for_pump(self, child: ChildProcess) -> bool:
        """Give the pump up to ``drain_timeout`` to reach EOF."""
        if child.pump_task.done():
            return True
        done, _ = await asyncio.wait({child.pump_task}, timeout=self.drain_timeout)
        return bool(done)

    def _require_current(self, child: ChildProcess) -> None:
        if child is not self._child:
            raise WatchdogError(f"pid={child.pid} is not supervised by this watchdog")


def default_tee() -> BinaryIO | None:
    """The inherited terminal stream, if it has a binary buffer."""
    return getattr(sys.stdout, "buffer", None)
