"""ProcessTable tests.

Test coverage:
- Listing includes pid, pgid and command line
- Group membership filtered by command-line substring
- The calling process is never reported
- Killing a vanished process raises KillError
"""

from __future__ import annotations

import os
import subprocess
import sys
from pathlib import Path
from unittest import mock

import psutil
import pytest

from shark_watchdog.errors import KillError
from shark_watchdog.runtime.process_table import ProcessEntry, ProcessTable

pytestmark = pytest.mark.skipif(sys.platform == "win32", reason="POSIX process groups")


@pytest.fixture
def table() -> ProcessTable:
    return ProcessTable()


@pytest.fixture
def sleeper(workspace: Path):
    """A sleeping child in its own session whose argv mentions the workspace."""
    proc = subprocess.Popen(
        [sys.executable, "-c", "import sys, time; time.sleep(60)", str(workspace)],
        start_new_session=True,
    )
    yield proc
    proc.kill()
    proc.wait()


class TestListing:
    """Test process listing."""

    def test_lists_own_process(self, table: ProcessTable):
        entries = {e.pid: e for e in table.list_processes()}
        me = entries[os.getpid()]
        assert me.pgid == os.getpgid(0)
        assert me.cmdline

    def test_lists_child_with_cmdline(self, table: ProcessTable, sleeper, workspace: Path):
        entries = {e.pid: e for e in table.list_processes()}
        entry = entries[sleeper.pid]
        assert entry.pgid == sleeper.pid
        assert str(workspace) in entry.cmdline


class TestGroupMembers:
    """Test group filtering."""

    def test_filter_by_substring(self, table: ProcessTable, sleeper, workspace: Path):
        members = table.group_members(sleeper.pid, contains=str(workspace))
        assert [m.pid for m in members] == [sleeper.pid]

    def test_substring_mismatch_excludes(self, table: ProcessTable, sleeper):
        assert table.group_members(sleeper.pid, contains="/no/such/workspace") == []

    def test_no_filter_returns_whole_group(self, table: ProcessTable, sleeper):
        assert [m.pid for m in table.group_members(sleeper.pid)] == [sleeper.pid]

    def test_excludes_calling_process(self, table: ProcessTable):
        members = table.group_members(os.getpgid(0))
        assert os.getpid() not in [m.pid for m in members]


class TestKill:
    """Test signalling."""

    def test_kill_terminates(self, table: ProcessTable, sleeper):
        (entry,) = table.group_members(sleeper.pid)
        table.kill(entry)
        assert sleeper.wait(timeout=5) == -9

    def test_kill_vanished_raises(self, table: ProcessTable):
        proc = mock.MagicMock(spec=psutil.Process)
        proc.send_signal.side_effect = psutil.NoSuchProcess(424242)
        entry = ProcessEntry(pid=424242, pgid=424242, cmdline="gone", proc=proc)

        with pytest.raises(KillError) as exc_info:
            table.kill(entry)
        assert exc_info.value.pid == 424242

    def test_kill_access_denied_raises(self, table: ProcessTable):
        proc = mock.MagicMock(spec=psutil.Process)
        proc.send_signal.side_effect = psutil.AccessDenied(1)
        entry = ProcessEntry(pid=1, pgid=1, cmdline="init", proc=proc)

        with pytest.raises(KillError):
            table.kill(entry)
