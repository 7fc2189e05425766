"""Progress sinks and line-buffered relaying of remote output."""

import asyncio
from typing import Protocol

from rich.console import Console
import structlog

logger = structlog.get_logger(__name__)

READ_CHUNK_SIZE = 4096


class ProgressSink(Protocol):
    """Receives user-visible status lines and streamed remote output."""

    def output(self, line: str) -> None:
        """Emit one line of text."""
        ...


class LoggingSink:
    """Sink that forwards every line to structlog."""

    def __init__(self, event: str = "provisioner_output"):
        self.event = event

    def output(self, line: str) -> None:
        logger.info(self.event, line=line)


class ConsoleSink:
    """Sink that prints lines to a rich console without markup processing."""

    def __init__(self, console: Console | None = None):
        self.console = console or Console()

    def output(self, line: str) -> None:
        self.console.print(line, markup=False, highlight=False, soft_wrap=True)


class OutputPipe:
    """In-memory byte pipe between a communicator and a line relay.

    The communicator calls ``write`` with raw bytes and ``close`` when the
    stream ends; the relay side reads until EOF.
    """

    def __init__(self) -> None:
        self._reader = asyncio.StreamReader()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write(self, data: bytes) -> None:
        if self._closed or not data:
            return
        self._reader.feed_data(data)

    def close(self) -> None:
        if not self._closed:
            self._closed = True
            self._reader.feed_eof()

    async def read(self, n: int = READ_CHUNK_SIZE) -> bytes:
        return await self._reader.read(n)


def _decode(line: bytes) -> str:
    return line.decode("utf-8", errors="replace").rstrip("\r")


async def relay_lines(pipe: OutputPipe, sink: ProgressSink) -> None:
    """Forward ``pipe`` to ``sink`` one line at a time until EOF."""
    buffer = b""
    while chunk := await pipe.read():
        buffer += chunk
        *lines, buffer = buffer.split(b"\n")
        for line in lines:
            sink.output(_decode(line))
    if buffer:
        sink.output(_decode(buffer))
