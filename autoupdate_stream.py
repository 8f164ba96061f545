#!/usr/bin/env python3
"""
📡 Autoupdate Stream Consumer
=============================
Keeps one long-poll GET open and turns its newline-delimited JSON body into
ChangeEvents, in line order, one per record.

The body is read chunk by chunk and never buffered beyond one line; a line
longer than MAX_LINE_SIZE ends the stream with a StreamError.
"""

import asyncio
import json
from typing import AsyncIterator, List, Optional

import aiohttp
from rich.console import Console

from load_client import Shutdown, StreamError, UserSession, wait_or_stop
from progress_buckets import INITIAL_CHANGE_ID, ChangeEvent, Failure, ProgressSink

console = Console()

PATH_AUTOUPDATE = "/system/autoupdate"
CONNECTED_RECORD = b'{"connected":true}'
MAX_LINE_SIZE = 1_000_000  # bytes, without the line terminator


class LineTooLong(StreamError):
    pass


class LineSplitter:
    """
    Incremental newline splitter with a per-line size cap.

    feed() returns the complete lines contained in the data seen so far;
    finish() returns the unterminated rest at end of stream. Trailing "\\r"
    is stripped from every line.

    A line over the limit does not cost the lines before it: feed() still
    returns those and sets `error`, which raise_for_error() and every later
    feed() or finish() raise.
    """

    def __init__(self, max_line_size: int = MAX_LINE_SIZE):
        self.max_line_size = max_line_size
        self.error: Optional[LineTooLong] = None
        self._buffer = bytearray()

    def _too_long(self, size: int) -> bool:
        if size <= self.max_line_size:
            return False
        self.error = LineTooLong(f"line of {size} bytes exceeds limit of {self.max_line_size}")
        self._buffer.clear()
        return True

    def raise_for_error(self):
        if self.error is not None:
            raise self.error

    @staticmethod
    def _strip_cr(line: bytes) -> bytes:
        return line[:-1] if line.endswith(b"\r") else line

    def feed(self, data: bytes) -> List[bytes]:
        self.raise_for_error()
        # Only the unterminated tail is rescanned for a newline.
        start = len(self._buffer)
        self._buffer += data
        lines = []
        pos = 0
        while True:
            idx = self._buffer.find(b"\n", start)
            if idx < 0:
                break
            line = self._strip_cr(bytes(self._buffer[pos:idx]))
            if self._too_long(len(line)):
                return lines
            lines.append(line)
            pos = start = idx + 1
        del self._buffer[:pos]
        # A trailing "\r" may still turn out to be part of the terminator.
        self._too_long(len(self._buffer) - (1 if self._buffer.endswith(b"\r") else 0))
        return lines

    def finish(self) -> Optional[bytes]:
        self.raise_for_error()
        if not self._buffer:
            return None
        line = self._strip_cr(bytes(self._buffer))
        self._buffer.clear()
        if self._too_long(len(line)):
            self.raise_for_error()
        return line


def parse_change_id(line: bytes) -> int:
    """
    Map one record to its change id.

    The connected record maps to 0; anything else must be a JSON object
    with an integer "to_change_id".
    """
    if line == CONNECTED_RECORD:
        return INITIAL_CHANGE_ID

    try:
        record = json.loads(line)
    except ValueError as e:
        raise StreamError(f"can not decode json: {e}")

    if not isinstance(record, dict):
        raise StreamError(f"expected a json object, got {type(record).__name__}")
    change_id = record.get("to_change_id")
    if isinstance(change_id, bool) or not isinstance(change_id, int):
        raise StreamError(f"record has no integer to_change_id: {line[:80]!r}")
    return change_id


class StreamConsumer:
    """
    One autoupdate connection of an authenticated session.

    events() yields change ids until the server closes the connection, the
    stop event fires, or a StreamError occurs. A consumer is single use.
    """

    def __init__(
        self,
        session: UserSession,
        path: str = PATH_AUTOUPDATE,
        max_line_size: int = MAX_LINE_SIZE,
        name: str = "stream",
    ):
        self.session = session
        self.path = path
        self.max_line_size = max_line_size
        self.name = name
        self._used = False

    @property
    def stop(self) -> asyncio.Event:
        return self.session.stop

    async def events(self) -> AsyncIterator[ChangeEvent]:
        if self._used:
            raise StreamError(f"{self.name}: stream already consumed, open a new one")
        self._used = True

        response = await self.session.open_stream(self.path)
        splitter = LineSplitter(self.max_line_size)
        async with response:
            while True:
                try:
                    chunk = await wait_or_stop(response.content.readany(), self.stop)
                except aiohttp.ClientError as e:
                    if self.stop.is_set():
                        raise Shutdown()
                    raise StreamError(f"can not read body: {type(e).__name__}: {e}")

                if chunk:
                    lines = splitter.feed(chunk)
                else:
                    tail = splitter.finish()
                    lines = [tail] if tail is not None else []

                for line in lines:
                    if not line.strip():
                        continue
                    try:
                        change_id = parse_change_id(line)
                    except StreamError:
                        if self.stop.is_set():
                            raise Shutdown()
                        raise
                    yield ChangeEvent(change_id)

                splitter.raise_for_error()
                if not chunk:
                    return

    async def consume(self, sink: ProgressSink) -> int:
        """
        Forward every event to `sink`. Stream failures are printed and
        recorded; shutdown is silent. Returns the number of events forwarded.
        """
        count = 0
        try:
            async for event in self.events():
                sink.record(event)
                count += 1
        except Shutdown:
            pass
        except StreamError as e:
            console.print(f"[red]{self.name}: {e}[/red]")
            sink.record(Failure("stream", str(e)))
        return count
