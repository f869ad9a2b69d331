"""Forward the child's output streams to the log line by line."""

from __future__ import annotations

import asyncio
import codecs

from loguru import logger

from ..const import CHILD_LOG_EXTRA, CHILD_LOG_LABEL

READ_CHUNK_SIZE = 4096


class OutputLineLogger:
    """Buffer raw output chunks and log every complete line.

    A trailing fragment without a newline stays buffered until the next
    chunk completes it or the stream ends.
    """

    def __init__(self, level: str, *, label: str = CHILD_LOG_LABEL) -> None:
        self.level = level
        self.label = label
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._logger = logger.bind(child=CHILD_LOG_EXTRA)

    @property
    def pending(self) -> str:
        """Return the buffered fragment that has not been logged yet."""

        return self._buffer

    def feed(self, chunk: bytes) -> None:
        """Append ``chunk`` and log all lines it completes."""

        self._buffer += self._decoder.decode(chunk)
        pos = self._buffer.rfind("\n")
        if pos == -1:
            return
        complete, self._buffer = self._buffer[:pos], self._buffer[pos + 1 :]
        for line in complete.split("\n"):
            self._emit(line)

    def flush(self) -> None:
        """Log the buffered fragment, if any."""

        fragment = self._buffer + self._decoder.decode(b"", final=True)
        self._buffer = ""
        self._emit(fragment)

    async def drain(self, stream: asyncio.StreamReader) -> None:
        """Read ``stream`` until EOF, logging each line."""

        try:
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                self.feed(chunk)
        finally:
            self.flush()

    def _emit(self, line: str) -> None:
        text = line.rstrip("\r")
        if text:
            self._logger.log(self.level, f"{self.label} {text}")
