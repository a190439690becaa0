#!/usr/bin/env python3
"""Line-framed control channel to the remote load agent.

Agent -> driver lines are ``<VERB> <text>``. ``OK`` replies resolve the
oldest pending command (the agent answers commands one at a time, in order),
``PROGRESS`` lines are relayed to an observer and anything else is reported
as an anomaly and otherwise ignored.
"""

from __future__ import annotations

import asyncio
import re
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Optional

_VERB_SPLIT = re.compile(r"\s+")


class ChannelClosed(ConnectionError):
    pass


@dataclass
class PendingCommand:
    text: str
    timeout: float
    future: asyncio.Future = field(repr=False)
    stale: bool = False

    def resolve(self, reply: str) -> None:
        # A stale slot already reported a timeout; its late reply is dropped here.
        if not self.future.done():
            self.future.set_result(reply)

    def fail(self, exc: BaseException) -> None:
        if not self.future.done():
            self.future.set_exception(exc)
            if self.stale:
                # Nobody awaits a stale slot any more; mark the exception retrieved.
                self.future.exception()


def _print_progress(text: str) -> None:
    print(f"[remote] {text}", file=sys.stderr)


def _print_anomaly(verb: str, text: str) -> None:
    print(f"Incoming line {verb} {text}".rstrip(), file=sys.stderr)


def _print_stderr(text: str) -> None:
    print(f"[remote:err] {text}", file=sys.stderr)


class ControlChannel:
    def __init__(
        self,
        writer=None,
        on_progress: Callable[[str], None] = _print_progress,
        on_anomaly: Callable[[str, str], None] = _print_anomaly,
        on_stderr: Callable[[str], None] = _print_stderr,
    ):
        self.pending: Deque[PendingCommand] = deque()
        self._writer = writer
        self._buffer = bytearray()
        self._on_progress = on_progress
        self._on_anomaly = on_anomaly
        self._on_stderr = on_stderr
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def write_line(self, text: str) -> None:
        if self._closed:
            raise ChannelClosed("control channel is closed")
        if self._writer is None:
            raise ChannelClosed("control channel has no writer attached")
        self._writer.write(text.encode("utf-8") + b"\n")

    def feed(self, data: bytes) -> None:
        """Append raw bytes and dispatch every complete line.

        A trailing fragment without a newline stays buffered until the next
        call.
        """
        self._buffer.extend(data)
        while True:
            idx = self._buffer.find(b"\n")
            if idx < 0:
                return
            raw = bytes(self._buffer[:idx])
            del self._buffer[: idx + 1]
            self._dispatch(raw.decode("utf-8", errors="replace").rstrip("\r"))

    def _dispatch(self, line: str) -> None:
        parts = _VERB_SPLIT.split(line, maxsplit=1)
        verb = parts[0]
        text = parts[1] if len(parts) > 1 else ""
        if verb == "OK":
            if self.pending:
                self.pending.popleft().resolve(text)
        elif verb == "PROGRESS":
            self._on_progress(text)
        else:
            self._on_anomaly(verb, text)

    async def pump(self, reader: asyncio.StreamReader, chunk_size: int = 4096) -> None:
        while True:
            data = await reader.read(chunk_size)
            if not data:
                break
            self.feed(data)
        self.close()

    async def relay_stderr(self, reader: asyncio.StreamReader) -> None:
        while True:
            raw = await reader.readline()
            if not raw:
                return
            self._on_stderr(raw.decode("utf-8", errors="replace").rstrip("\n"))

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        while self.pending:
            self.pending.popleft().fail(ChannelClosed("remote agent closed the control channel"))
