"""Process runner with process-group isolation and output teeing.

shark-watchdog runtime module

This module provides:
- Spawning the supervised tool as leader of a new session/process group
- Duplicating its combined stdout/stderr to the terminal and a LogSink
- Group-wide termination (SIGTERM -> timeout -> SIGKILL) for cleanup paths

Key design points:
- POSIX: start_new_session=True so every sub-build shares one pgid that
  differs from the supervisor's own group
- stderr is merged into stdout so the log keeps the terminal's ordering
- The tee lives in the supervisor, never in the child's process group
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO

from ..errors import SpawnError
from .log_sink import LogSink

__all__ = [
    "ProcessRunner",
    "ProcessSpec",
]

logger = logging.getLogger(__name__)

# Default timeouts
DEFAULT_TERM_TIMEOUT = 2.0  # seconds to wait after SIGTERM
DEFAULT_KILL_TIMEOUT = 1.0  # seconds to wait after SIGKILL

READ_CHUNK_SIZE = 4096


@dataclass(frozen=True)
class ProcessSpec:
    """Specification for a subprocess to run.

    Attributes:
        argv: Command line arguments (first element is the executable)
        cwd: Working directory for the process
        env: Environment variables (None = inherit parent)
    """

    argv: list[str]
    cwd: Path
    env: Mapping[str, str] | None = None


@dataclass
class ProcessRunner:
    """Spawns and tears down supervised processes.

    Example:
        runner = ProcessRunner()
        process = await runner.spawn(ProcessSpec(argv=["sbt", "test"], cwd=ws))
        pump = asyncio.create_task(runner.pump_output(process, sink, sys.stdout.buffer))
        await process.wait()
    """

    term_timeout: float = DEFAULT_TERM_TIMEOUT
    kill_timeout: float = DEFAULT_KILL_TIMEOUT

    async def spawn(self, spec: ProcessSpec) -> asyncio.subprocess.Process:
        """Start the subprocess as a new process group leader.

        stdin is DEVNULL, stdout is a pipe and stderr is merged into it.

        Raises:
            SpawnError: If the working directory is invalid or the executable
                cannot be started
        """
        if not spec.argv:
            raise SpawnError("empty command line", spec.argv, str(spec.cwd))
        if not Path(spec.cwd).is_dir():
            raise SpawnError(
                f"working directory does not exist: {spec.cwd}", spec.argv, str(spec.cwd)
            )

        kwargs = self._build_subprocess_kwargs(spec)

        try:
            process = await asyncio.create_subprocess_exec(
                *spec.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=spec.cwd,
                **kwargs,
            )
        except OSError as e:
            raise SpawnError(
                f"cannot start {spec.argv[0]}: {e.strerror or e}", spec.argv, str(spec.cwd)
            ) from e

        logger.debug(
            f"Started subprocess pid={process.pid} "
            f"argv={spec.argv[0]} cwd={spec.cwd}"
        )
        return process

    def _build_subprocess_kwargs(self, spec: ProcessSpec) -> dict[str, Any]:
        """Build subprocess kwargs.

        Args:
            spec: Process specification

        Returns:
            Dict of kwargs for asyncio.create_subprocess_exec
        """
        kwargs: dict[str, Any] = {}

        if spec.env is not None:
            kwargs["env"] = dict(spec.env)

        # POSIX: start_new_session (equivalent to setsid)
        kwargs["start_new_session"] = True

        return kwargs

    async def pump_output(
        self,
        process: asyncio.subprocess.Process,
        sink: LogSink,
        tee: BinaryIO | None = None,
    ) -> int:
        """Copy the child's output to the log sink and the terminal until EOF.

        A broken terminal stream stops the tee but never the log.

        Args:
            process: The subprocess
            sink: Log the output is appended to
            tee: Terminal stream to duplicate into (None = log only)

        Returns:
            Number of bytes copied
        """
        total = 0
        if process.stdout is None:
            return total

        await sink.open_writer()
        while True:
            chunk = await process.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            total += len(chunk)
            await sink.write(chunk)
            if tee is not None:
                try:
                    tee.write(chunk)
                    tee.flush()
                except (OSError, ValueError) as e:
                    logger.debug(f"Terminal tee disabled: {e}")
                    tee = None

        logger.debug(f"Output pump reached EOF pid={process.pid} bytes={total}")
        return total

    async def terminate_group(
        self,
        process: asyncio.subprocess.Process,
        pgid: int | None = None,
    ) -> None:
        """Stop every process in the child's group when supervision is abandoned.

        The marker path kills only the tool processes that carry the kill
        filter and lets helpers wind down. Abandoning (cancellation, a failure
        inside the poll loop) has no marker to justify a partial stop, so the
        whole group gets SIGTERM, then SIGKILL once ``term_timeout`` passes.
        """
        pid = process.pid
        stages = (
            (signal.SIGTERM, self.term_timeout),
            (signal.SIGKILL, self.kill_timeout),
        )
        for sig, timeout in stages:
            if process.returncode is not None:
                break
            self._signal_group(process, sig, pgid)
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logger.debug(
                    f"pid={pid} still running {timeout}s after {signal.Signals(sig).name}"
                )

        if process.returncode is None:
            logger.warning(f"Subprocess did not exit after SIGKILL pid={pid}")
        else:
            logger.debug(f"Group of pid={pid} stopped returncode={process.returncode}")

    def _signal_group(
        self,
        process: asyncio.subprocess.Process,
        sig: int,
        pgid: int | None = None,
    ) -> None:
        """Send ``sig`` to the child's group, or to the child alone if that fails."""
        try:
            os.killpg(os.getpgid(process.pid) if pgid is None else pgid, sig)
        except ProcessLookupError:
            logger.debug(f"Group of pid={process.pid} already gone")
        except OSError as e:
            logger.debug(f"killpg failed for pid={process.pid}, signalling it directly: {e}")
            try:
                process.send_signal(sig)
            except ProcessLookupError:
                pass
