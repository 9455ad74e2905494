"""Host process listing: pid, process group and full command line."""

from __future__ import annotations

import logging
import os
import signal
from dataclasses import dataclass, field

import psutil

from ..errors import KillError

__all__ = ["ProcessEntry", "ProcessTable"]

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProcessEntry:
    """One row of the process table."""

    pid: int
    pgid: int
    cmdline: str
    proc: psutil.Process = field(compare=False, repr=False)


class ProcessTable:
    """Lists running processes and signals individual ones."""

    def list_processes(self) -> list[ProcessEntry]:
        entries: list[ProcessEntry] = []
        for proc in psutil.process_iter(["pid", "cmdline"]):
            pid = proc.info["pid"]
            if pid == 0:
                continue
            try:
                pgid = os.getpgid(pid)
            except OSError:
                # Exited between listing and lookup
                continue
            cmdline = " ".join(proc.info["cmdline"] or [])
            entries.append(ProcessEntry(pid=pid, pgid=pgid, cmdline=cmdline, proc=proc))
        return entries

    def group_members(self, pgid: int, contains: str | None = None) -> list[ProcessEntry]:
        """Members of process group ``pgid``, optionally filtered by command line.

        The calling process is never included.
        """
        own_pid = os.getpid()
        members = []
        for entry in self.list_processes():
            if entry.pgid != pgid or entry.pid == own_pid:
                continue
            if contains is not None and contains not in entry.cmdline:
                continue
            members.append(entry)
        return members

    def kill(self, entry: ProcessEntry, sig: int = signal.SIGKILL) -> None:
        """Send ``sig`` to a single process.

        Raises:
            KillError: If the process is already gone or cannot be signalled
        """
        try:
            entry.proc.send_signal(sig)
        except psutil.NoSuchProcess as e:
            raise KillError(entry.pid, "no such process") from e
        except psutil.AccessDenied as e:
            raise KillError(entry.pid, "access denied") from e
        logger.debug(f"Sent signal {sig} to pid={entry.pid} cmdline={entry.cmdline[:120]}")
