import math
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional, Sequence, Union

from ipc_session.channels import Channel, ProcessChannel
from ipc_session.config import (
    FLUSH_WINDOW, STREAM_NAMES, TEXT_ENCODING, UNPARSED_EXIT_STATUS, config
)
from ipc_session.errors import (
    ChannelError, CommandTimeoutError, IPCSessionError, SessionBusyError,
    SessionDeadError, SpawnError, StreamWriteError
)
from ipc_session.reader import (
    StreamReader, build_command_script, drain_ready, make_sentinel, read_streams
)
from ipc_session.utils import iso_now, json_line, log_error, session_log_path

ErrorHandler = Callable[[IPCSessionError], Any]


def _describe(command: Union[str, Sequence[str]]) -> str:
    if isinstance(command, str):
        return command
    return " ".join(command)


def raise_error(error: IPCSessionError) -> None:
    """Default error policy: abort the call by raising ``error``."""
    raise error


@dataclass(frozen=True)
class CommandResult:
    stdout: str = ""
    stderr: str = ""
    exit_status: int = UNPARSED_EXIT_STATUS
    command: str = ""
    duration: float = 0.0

    @property
    def errno(self) -> int:
        return self.exit_status

    @property
    def status_known(self) -> bool:
        return self.exit_status != UNPARSED_EXIT_STATUS

    def as_dict(self) -> Dict[str, Any]:
        return {"stdout": self.stdout, "stderr": self.stderr, "errno": self.exit_status}


class Session:
    """Persistent shell session over one child process.

    Each :meth:`send` writes the command plus two sentinel echo lines to the
    child's input, then reads stdout and stderr up to their sentinel lines.
    One command may be in flight at a time.
    """

    def __init__(
        self,
        command: Union[str, Sequence[str], None] = None,
        timeout: Optional[float] = None,
        handler: Optional[ErrorHandler] = None,
        channel: Optional[Channel] = None,
        name: str = "",
        log_path: Optional[str] = None,
        multiplex: bool = True,
    ):
        self._handler: ErrorHandler = handler or raise_error
        self._timeout = float(config.TIMEOUT)
        if timeout is not None:
            self.timeout(timeout)

        self.command = command if command is not None else config.COMMAND
        self.multiplex = multiplex
        self.channel: Optional[Channel] = channel
        if not name:
            name = channel.describe() if channel else _describe(self.command)
        self.name = name

        self.created_at = datetime.now()
        self.is_dead = False
        self.death_reason = ""
        self.death_time: Optional[datetime] = None

        self.last_command = ""
        self.last_command_time: Optional[datetime] = None
        self.command_counter = 0

        self.readers: Dict[str, StreamReader] = {
            "stdout": StreamReader("stdout", parse_status=True),
            "stderr": StreamReader("stderr"),
        }
        self._last: Optional[CommandResult] = None
        self._busy = threading.Lock()

        if log_path is None and config.LOG_DIR:
            log_path = session_log_path(config.LOG_DIR, self.name)
        self.log_path = log_path
        self._log("SYS", {"event": "session_created", "name": self.name})

        if self.channel is None:
            try:
                self.channel = ProcessChannel(self.command)
            except SpawnError as exc:
                self._mark_dead(str(exc))
                self._fail(exc)

    def _log(self, direction: str, payload: Dict[str, Any]) -> None:
        if not self.log_path:
            return
        data = {"ts": iso_now(), "dir": direction, "session": self.name}
        data.update(payload)
        json_line(self.log_path, data)

    def _mark_dead(self, reason: str) -> None:
        if self.is_dead:
            return
        self.is_dead = True
        self.death_reason = reason
        self.death_time = datetime.now()
        self._log("SYS", {"event": "session_dead", "reason": reason})

    def _fail(self, error: IPCSessionError) -> None:
        log_error(f"session {self.name!r}: {error}")
        self._log("SYS", {"event": "error", "type": type(error).__name__, "error": str(error)})
        self._handler(error)
        return None

    def send(self, *parts: str) -> Optional[CommandResult]:
        """Run a command in the child's shell and return its captured output.

        Several arguments are joined with spaces into one command line.

        Fatal conditions go through the error handler; the default handler
        raises, any other handler that returns makes this return ``None``.
        The last result is only replaced when the command completed.
        """
        if self.is_dead:
            return self._fail(SessionDeadError(f"session {self.name!r} is dead: {self.death_reason}"))
        if not self._busy.acquire(blocking=False):
            return self._fail(SessionBusyError(f"session {self.name!r} already has a command in flight"))
        try:
            return self._dispatch(" ".join(parts))
        finally:
            self._busy.release()

    def _dispatch(self, command: str) -> Optional[CommandResult]:
        self.command_counter += 1
        sentinel = make_sentinel(self.command_counter)
        self.last_command = command
        self.last_command_time = datetime.now()
        started = time.monotonic()

        try:
            self._discard_stale()
            self._log("IN", {"event": "command_sent", "seq": self.command_counter, "command": command})
            self._write(build_command_script(command, sentinel))
            self._collect(sentinel)
        except CommandTimeoutError as exc:
            for reader in self.readers.values():
                reader.abandon()
            self._log("SYS", {"event": "timeout", "stream": exc.stream, "timeout": exc.timeout})
            return self._fail(exc)
        except ChannelError as exc:
            self._mark_dead(str(exc))
            return self._fail(exc)

        stdout_reader = self.readers["stdout"]
        result = CommandResult(
            stdout=stdout_reader.text,
            stderr=self.readers["stderr"].text,
            exit_status=stdout_reader.exit_status,
            command=command,
            duration=time.monotonic() - started,
        )
        if not result.status_known:
            self._log("SYS", {"event": "exit_status_unparsed", "line": stdout_reader.sentinel_line})
        self._last = result
        self._log(
            "OUT",
            {
                "event": "command_finished",
                "seq": self.command_counter,
                "errno": result.exit_status,
                "stdout": result.stdout,
                "stderr": result.stderr,
                "duration": round(result.duration, 6),
            },
        )
        return result

    def _discard_stale(self) -> None:
        discarded = 0
        clean = []
        for name, reader in self.readers.items():
            discarded += len(reader.stray)
            reader.stray = b""
            if not reader.stale:
                clean.append(name)
        discarded += drain_ready(self.channel, clean, FLUSH_WINDOW)
        if discarded:
            self._log("SYS", {"event": "stale_output_discarded", "bytes": discarded})

    def _write(self, script: str) -> None:
        try:
            self.channel.write(script.encode(TEXT_ENCODING))
        except OSError as exc:
            raise StreamWriteError("stdin", str(exc)) from exc

    def _collect(self, sentinel: str) -> None:
        for reader in self.readers.values():
            reader.begin(sentinel)
        if self.multiplex:
            read_streams(self.channel, self.readers.values(), self._timeout)
            return
        for name in STREAM_NAMES:
            self.readers[name].read_from(self.channel, self._timeout)

    def call(self, *parts: str) -> int:
        """Run a command and return only its exit status."""
        result = self.send(*parts)
        if result is None:
            return UNPARSED_EXIT_STATUS
        return result.exit_status

    def timeout(self, seconds: Optional[float] = None) -> float:
        """Return the read timeout, setting it first when ``seconds`` is given.

        Only positive finite numbers are accepted.
        """
        if seconds is not None:
            if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
                raise ValueError(f"timeout must be a number of seconds, got {seconds!r}")
            if not math.isfinite(seconds) or seconds <= 0:
                raise ValueError(f"timeout must be a positive number of seconds, got {seconds!r}")
            self._timeout = float(seconds)
        return self._timeout

    def handler(self, new_handler: Optional[ErrorHandler] = None) -> ErrorHandler:
        if new_handler is not None:
            self._handler = new_handler
        return self._handler

    def last_result(self) -> Optional[CommandResult]:
        return self._last

    def stdout(self) -> str:
        return self._last.stdout if self._last else ""

    def stderr(self) -> str:
        return self._last.stderr if self._last else ""

    def exit_status(self) -> int:
        return self._last.exit_status if self._last else UNPARSED_EXIT_STATUS

    errno = exit_status

    def is_alive(self) -> bool:
        if self.is_dead or not self.channel:
            return False
        return self.channel.is_alive()

    def close(self) -> None:
        if self.channel:
            self.channel.close()
        self.channel = None
        self._mark_dead("closed")
        self._log("SYS", {"event": "session_closed"})

    def info(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "alive": self.is_alive(),
            "dead": self.is_dead,
            "death_reason": self.death_reason if self.is_dead else "",
            "timeout": self._timeout,
            "multiplex": self.multiplex,
            "commands_sent": self.command_counter,
            "last_command": self.last_command,
            "last_command_time": self.last_command_time.isoformat() if self.last_command_time else None,
            "last_errno": self.exit_status(),
            "created_at": self.created_at.isoformat(),
            "log_path": self.log_path,
        }
