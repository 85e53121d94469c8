"""Sentinel framing and per-stream boundary detection.

Every command is followed by two echo statements that print a fresh marker,
one on stdout (carrying ``$?``) and one on stderr. A :class:`StreamReader`
accumulates a stream's lines until the line holding the marker arrives.
"""

import re
import uuid
from typing import Iterable, List

from ipc_session.config import (
    FLUSH_LIMIT, READ_CHUNK_SIZE, SENTINEL_PREFIX, TEXT_ENCODING, UNPARSED_EXIT_STATUS
)
from ipc_session.errors import CommandTimeoutError, StreamReadError

AWAITING_READINESS = "awaiting_readiness"
READING_LINE = "reading_line"
SENTINEL_MATCHED = "sentinel_matched"


def make_sentinel(counter: int) -> str:
    return f"{SENTINEL_PREFIX}{uuid.uuid4().hex}_{counter}_"


def build_command_script(command: str, sentinel: str) -> str:
    """Return the three lines written to the child's input for one command."""
    return (
        f"{command}\n"
        f"echo {sentinel} errno=$?\n"
        f"echo {sentinel} >&2\n"
    )


def parse_exit_status(line: str, sentinel: str) -> int:
    match = re.search(re.escape(sentinel) + r" errno=(\d+)", line)
    if match:
        return int(match.group(1))
    return UNPARSED_EXIT_STATUS


class StreamReader:
    """Reads one output stream up to the current command's sentinel line.

    The reader is a small state machine: it waits for readiness, collects
    bytes into the current line, and on each line terminator either stores
    the line or, when the line contains the sentinel, stops. Bytes received
    after the sentinel line are kept in ``stray`` and never reported as
    command output.

    A command abandoned on timeout leaves its marker in ``stale``; when that
    marker shows up during a later command, everything read up to it belongs
    to the abandoned command and is dropped.
    """

    def __init__(self, name: str, parse_status: bool = False):
        self.name = name
        self.parse_status = parse_status
        self.sentinel = ""
        self.sentinel_line = ""
        self.exit_status = UNPARSED_EXIT_STATUS
        self.state = SENTINEL_MATCHED
        self.stray = b""
        self.stale: List[bytes] = []
        self._marker = b""
        self._lines: List[bytes] = []
        self._partial = b""

    @property
    def done(self) -> bool:
        return self.state == SENTINEL_MATCHED

    @property
    def text(self) -> str:
        return b"".join(self._lines).decode(TEXT_ENCODING, errors="replace")

    def begin(self, sentinel: str) -> None:
        self.sentinel = sentinel
        self.sentinel_line = ""
        self.exit_status = UNPARSED_EXIT_STATUS
        self.state = AWAITING_READINESS
        self.stray = b""
        self._marker = sentinel.encode(TEXT_ENCODING)
        self._lines = []

    def feed(self, data: bytes) -> bool:
        """Consume ``data``; return True once the sentinel line was seen."""
        if self.done:
            self.stray += data
            return True

        self._partial += data
        while True:
            newline = self._partial.find(b"\n")
            if newline < 0:
                break
            line = self._partial[:newline + 1]
            self._partial = self._partial[newline + 1:]
            if self._drop_stale(line):
                continue
            if self._marker in line:
                self._match(line)
                self.stray = self._partial
                self._partial = b""
                return True
            self._lines.append(line)

        self.state = READING_LINE if self._partial else AWAITING_READINESS
        return False

    def abandon(self) -> None:
        if not self.done and self._marker:
            self.stale.append(self._marker)
        self.state = SENTINEL_MATCHED

    def _drop_stale(self, line: bytes) -> bool:
        for marker in self.stale:
            if marker in line:
                self.stale.remove(marker)
                self._lines = []
                return True
        return False

    def _match(self, line: bytes) -> None:
        # Output without a trailing newline shares the line with the marker.
        head = line[:line.index(self._marker)]
        if head:
            self._lines.append(head)
        self.sentinel_line = line.decode(TEXT_ENCODING, errors="replace").rstrip("\r\n")
        if self.parse_status:
            self.exit_status = parse_exit_status(self.sentinel_line, self.sentinel)
        self.state = SENTINEL_MATCHED

    def read_once(self, channel) -> bool:
        try:
            chunk = channel.read(self.name, READ_CHUNK_SIZE)
        except OSError as exc:
            raise StreamReadError(self.name, str(exc)) from exc
        if not chunk:
            detail = "end of stream"
            status = channel.exit_status()
            if status is not None:
                detail = f"{detail} (child exited with status {status})"
            raise StreamReadError(self.name, detail)
        return self.feed(chunk)

    def read_from(self, channel, timeout: float) -> str:
        """Drain this stream alone until its sentinel line arrives."""
        while not self.done:
            if not channel.wait_readable([self.name], timeout):
                raise CommandTimeoutError(self.name, timeout)
            self.read_once(channel)
        return self.text


def read_streams(channel, readers: Iterable[StreamReader], timeout: float) -> None:
    """Drain several streams together until every reader saw its sentinel.

    Each readiness wait is bounded by ``timeout``; the timeout names the
    first stream still waiting for its sentinel.
    """
    by_name = {reader.name: reader for reader in readers}
    while True:
        waiting = [name for name, reader in by_name.items() if not reader.done]
        if not waiting:
            return
        ready = channel.wait_readable(waiting, timeout)
        if not ready:
            raise CommandTimeoutError(waiting[0], timeout)
        for name in ready:
            by_name[name].read_once(channel)


def drain_ready(channel, names: Iterable[str], window: float = 0.0, limit: int = FLUSH_LIMIT) -> int:
    """Discard whatever is immediately readable; return the byte count.

    Stops after about ``limit`` bytes so a child that never stops writing
    cannot hold up the next command.
    """
    discarded = 0
    names = list(names)
    while names and discarded < limit:
        ready = channel.wait_readable(names, window)
        if not ready:
            break
        for name in ready:
            try:
                chunk = channel.read(name, READ_CHUNK_SIZE)
            except OSError as exc:
                raise StreamReadError(name, str(exc)) from exc
            if not chunk:
                names.remove(name)
                continue
            discarded += len(chunk)
    return discarded
