"""Exception types raised through a session's error handler."""


class IPCSessionError(Exception):
    """Base class for all ipc-session errors."""


class SpawnError(IPCSessionError):
    """Raised when the child process or its streams cannot be created."""


class ChannelError(IPCSessionError):
    """Raised when one of the child's streams fails during a command."""

    stream: str

    def __init__(self, stream: str, message: str) -> None:
        self.stream = stream
        super().__init__(message)


class CommandTimeoutError(ChannelError, TimeoutError):
    """Raised when no data became ready on a stream within the timeout."""

    def __init__(self, stream: str, timeout: float) -> None:
        self.timeout = timeout
        super().__init__(stream, f"timeout on {stream}")


class StreamReadError(ChannelError):
    """Raised when reading a stream failed or hit end-of-file."""

    def __init__(self, stream: str, detail: str = "") -> None:
        self.detail = detail
        message = f"read error from {stream}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(stream, message)


class StreamWriteError(ChannelError):
    """Raised when the command could not be written to the child's input."""

    def __init__(self, stream: str, detail: str = "") -> None:
        self.detail = detail
        message = f"write error to {stream}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(stream, message)


class SessionDeadError(IPCSessionError):
    """Raised when a command is sent to a session whose child has failed."""


class SessionBusyError(IPCSessionError):
    """Raised when a second command is sent while one is still in flight."""
