"""Stream providers for a session.

A channel owns one child shell and exposes the three streams the protocol
needs: a write end for the child's input and two read ends, ``stdout`` and
``stderr``, with readiness polling bounded by a timeout.
"""

import os
import select
import shlex
import subprocess
import time
from typing import Dict, List, Optional, Sequence, Union

import paramiko

from ipc_session.config import (
    CONNECT_TIMEOUT, KEEPALIVE_INTERVAL, POLL_INTERVAL, READ_CHUNK_SIZE,
    DEFAULT_REMOTE_COMMAND
)
from ipc_session.errors import SpawnError

# A command string holding any of these needs a shell to run.
SHELL_METACHARS = frozenset("=$&*(){}[]'\";\\|?<>~`\n")


def spawn_args(command: Union[str, Sequence[str]]):
    """Return the ``(args, shell)`` pair used to start ``command``.

    Plain command strings such as ``ssh host`` are split and executed
    directly so that a missing program fails at spawn time; only strings
    using shell syntax go through ``/bin/sh -c``.
    """
    if not isinstance(command, str):
        return list(command), False
    if SHELL_METACHARS.isdisjoint(command):
        args = shlex.split(command)
        if args:
            return args, False
    return command, True


class Channel:
    """Interface shared by every stream provider."""

    def write(self, data: bytes) -> None:
        raise NotImplementedError

    def wait_readable(self, names: Sequence[str], timeout: float) -> List[str]:
        """Block until at least one of ``names`` is readable.

        Returns the readable stream names, or an empty list when ``timeout``
        seconds passed with nothing to read. End-of-file counts as readable.
        """
        raise NotImplementedError

    def read(self, name: str, size: int = READ_CHUNK_SIZE) -> bytes:
        """Read up to ``size`` bytes; ``b""`` means the stream is closed."""
        raise NotImplementedError

    def is_alive(self) -> bool:
        raise NotImplementedError

    def exit_status(self) -> Optional[int]:
        return None

    def close(self) -> None:
        raise NotImplementedError

    def describe(self) -> str:
        return self.__class__.__name__


class ProcessChannel(Channel):
    """Child process started locally, e.g. ``ssh host`` or ``sh``."""

    def __init__(
        self,
        command: Union[str, Sequence[str]],
        env: Optional[Dict[str, str]] = None,
        cwd: Optional[str] = None,
    ):
        self.command = command
        final_env = os.environ.copy()
        if env:
            final_env.update(env)
        args, shell = spawn_args(command)
        try:
            self.process = subprocess.Popen(  # noqa: S603
                args,
                shell=shell,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                bufsize=0,
                cwd=cwd or None,
                env=final_env,
                close_fds=True,
            )
        except OSError as exc:
            raise SpawnError(f"failed to start {self.describe()}: {exc}") from exc

        self._fds = {
            "stdout": self.process.stdout.fileno(),
            "stderr": self.process.stderr.fileno(),
        }

    def write(self, data: bytes) -> None:
        view = memoryview(data)
        while view:
            written = self.process.stdin.write(view)
            view = view[written:]
        self.process.stdin.flush()

    def wait_readable(self, names: Sequence[str], timeout: float) -> List[str]:
        by_fd = {self._fds[name]: name for name in names}
        ready, _, _ = select.select(list(by_fd), [], [], timeout)
        return [by_fd[fd] for fd in ready]

    def read(self, name: str, size: int = READ_CHUNK_SIZE) -> bytes:
        return os.read(self._fds[name], size)

    def is_alive(self) -> bool:
        return self.process.poll() is None

    def exit_status(self) -> Optional[int]:
        return self.process.poll()

    def close(self) -> None:
        try:
            if self.process.stdin:
                self.process.stdin.close()
        except OSError:
            pass

        if self.process.poll() is None:
            self.process.terminate()
            try:
                self.process.wait(timeout=2.0)
            except subprocess.TimeoutExpired:
                self.process.kill()
                self.process.wait()

        for handle in (self.process.stdout, self.process.stderr):
            if handle:
                handle.close()

    def describe(self) -> str:
        if isinstance(self.command, str):
            return self.command
        return " ".join(self.command)


class ParamikoChannel(Channel):
    """Remote shell over an SSH exec channel.

    No PTY is requested so the remote shell keeps stdout and stderr apart.
    """

    def __init__(self, client: paramiko.SSHClient, remote_command: str = DEFAULT_REMOTE_COMMAND, label: str = ""):
        self.client = client
        self.remote_command = remote_command
        self.label = label or f"ssh:{remote_command}"
        try:
            transport = client.get_transport()
            if not transport or not transport.is_active():
                raise SpawnError(f"{self.label}: transport is not active")
            transport.set_keepalive(KEEPALIVE_INTERVAL)
            self.channel = transport.open_session()
            self.channel.settimeout(None)
            self.channel.exec_command(remote_command)
        except paramiko.SSHException as exc:
            raise SpawnError(f"{self.label}: failed to start {remote_command!r}: {exc}") from exc

    @classmethod
    def connect(
        cls,
        host: str,
        user: Optional[str] = None,
        port: int = 22,
        password: Optional[str] = None,
        key_path: Optional[str] = None,
        key_passphrase: Optional[str] = None,
        verify_host_key: bool = True,
        remote_command: str = DEFAULT_REMOTE_COMMAND,
    ) -> "ParamikoChannel":
        client = paramiko.SSHClient()
        if verify_host_key:
            client.load_system_host_keys()
        else:
            client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        connect_kwargs = {
            "hostname": host,
            "port": port,
            "username": user,
            "timeout": CONNECT_TIMEOUT,
            "allow_agent": True,
            "look_for_keys": True,
        }
        if password:
            connect_kwargs["password"] = password
        if key_path:
            connect_kwargs["key_filename"] = key_path
            if key_passphrase:
                connect_kwargs["passphrase"] = key_passphrase

        try:
            client.connect(**connect_kwargs)
        except (paramiko.SSHException, OSError) as exc:
            client.close()
            raise SpawnError(f"ssh connect to {host}:{port} failed: {exc}") from exc

        label = f"ssh {user}@{host}:{port}" if user else f"ssh {host}:{port}"
        try:
            return cls(client, remote_command=remote_command, label=label)
        except SpawnError:
            client.close()
            raise

    def _ready(self, name: str) -> bool:
        if self.channel.closed or self.channel.eof_received:
            return True
        if name == "stdout":
            return self.channel.recv_ready()
        return self.channel.recv_stderr_ready()

    def write(self, data: bytes) -> None:
        self.channel.sendall(data)

    def wait_readable(self, names: Sequence[str], timeout: float) -> List[str]:
        deadline = time.monotonic() + timeout
        while True:
            ready = [name for name in names if self._ready(name)]
            if ready:
                return ready
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return []
            time.sleep(min(POLL_INTERVAL, remaining))

    def read(self, name: str, size: int = READ_CHUNK_SIZE) -> bytes:
        if name == "stdout":
            return self.channel.recv(size)
        return self.channel.recv_stderr(size)

    def is_alive(self) -> bool:
        if self.channel.closed or self.channel.exit_status_ready():
            return False
        transport = self.client.get_transport()
        return bool(transport and transport.is_active())

    def exit_status(self) -> Optional[int]:
        if self.channel.exit_status_ready():
            return self.channel.recv_exit_status()
        return None

    def close(self) -> None:
        try:
            self.channel.close()
        finally:
            self.client.close()

    def describe(self) -> str:
        return self.label
