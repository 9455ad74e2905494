"""Append-only log the supervised output is duplicated into.

One writer (the output pump) and many readers (each poll iteration). Reads
never lock: the scanner remembers how far it got, only consumes complete
lines and re-checks the unterminated tail on every pass, so a partial write
is simply picked up again on the next interval.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

import anyio

from ..errors import LogSinkError, ScanError
from .types import MarkerPattern

__all__ = ["LogSink"]

logger = logging.getLogger(__name__)


class LogSink:
    """Log file plus an incremental marker scanner.

    Example:
        sink = LogSink(Path("/workspace/watchdog_test.log"))
        sink.reset()
        await sink.open_writer()
        await sink.write(b"[test] progress\\n")
        assert await sink.scan(MarkerPattern("[test]"))
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)
        self._writer: anyio.AsyncFile[bytes] | None = None
        self._offset = 0
        self._pending = b""
        self.bytes_written = 0

    def reset(self) -> None:
        """Remove any stale log and create an empty one.

        The file must exist before polling starts; a marker left over from a
        previous run must never match.

        Raises:
            LogSinkError: If the log cannot be recreated
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.unlink(missing_ok=True)
            self.path.touch()
        except OSError as e:
            raise LogSinkError(str(self.path), str(e)) from e
        self._offset = 0
        self._pending = b""
        self.bytes_written = 0
        logger.debug(f"Log sink reset path={self.path}")

    async def open_writer(self) -> None:
        if self._writer is None:
            try:
                self._writer = await anyio.open_file(self.path, "ab")
            except OSError as e:
                raise LogSinkError(str(self.path), str(e)) from e

    async def write(self, chunk: bytes) -> None:
        if self._writer is None:
            raise RuntimeError("log sink writer is not open")
        await self._writer.write(chunk)
        await self._writer.flush()
        self.bytes_written += len(chunk)

    async def close(self) -> None:
        if self._writer is not None:
            writer, self._writer = self._writer, None
            await writer.aclose()

    @property
    def is_open(self) -> bool:
        return self._writer is not None

    async def scan(self, pattern: MarkerPattern) -> bool:
        """Scan output appended since the previous call for ``pattern``.

        Complete lines are consumed, the trailing partial line is checked but
        kept for the next call so a marker split across writes still matches.

        Returns:
            True if the marker is present

        Raises:
            ScanError: If the log cannot be opened or read
        """
        try:
            async with await anyio.open_file(self.path, "rb") as f:
                size = await f.seek(0, os.SEEK_END)
                if size < self._offset:
                    logger.debug(
                        f"Log sink shrank ({size} < {self._offset}), rescanning from start"
                    )
                    self._offset = 0
                    self._pending = b""
                await f.seek(self._offset)
                data = await f.read()
        except OSError as e:
            raise ScanError(str(self.path), str(e)) from e

        self._offset += len(data)
        *lines, tail = (self._pending + data).split(b"\n")
        self._pending = tail

        for line in lines:
            if pattern.matches(line):
                return True
        return bool(tail) and pattern.matches(tail)
