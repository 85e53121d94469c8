import argparse
import io
import json
import math
import sys
from typing import Any, Dict, List, Optional

from ipc_session.channels import ParamikoChannel
from ipc_session.config import DEFAULT_REMOTE_COMMAND, config
from ipc_session.errors import CommandTimeoutError, IPCSessionError
from ipc_session.session import Session
from ipc_session.utils import log_error


def _write_response(stream, response: Dict[str, Any]) -> None:
    stream.write(json.dumps(response, ensure_ascii=False) + "\n")
    stream.flush()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="ipc-session",
        description=(
            "Run shell commands, one per input line, in a single persistent child "
            "shell and print one JSON result per command."
        ),
    )
    parser.add_argument("--command", help="Child command line, e.g. 'ssh host' (overrides IPC_SESSION_COMMAND env)")
    parser.add_argument("--timeout", type=float, help="Read timeout in seconds (overrides IPC_SESSION_TIMEOUT env)")
    parser.add_argument("--log-dir", help="Directory for JSON-lines session logs (overrides IPC_SESSION_LOG_DIR env)")
    parser.add_argument("--sequential", action="store_true", help="Drain stdout fully before stderr")
    parser.add_argument("--host", help="SSH host; connect with paramiko instead of spawning --command")
    parser.add_argument("--user", help="SSH username (overrides SSH_USER env)")
    parser.add_argument("--password", help="SSH password (overrides SSH_PASSWORD env)")
    parser.add_argument("--key", help="Path to SSH private key (overrides SSH_KEY_PATH env)")
    parser.add_argument("--passphrase", help="Passphrase for SSH private key (overrides SSH_KEY_PASSPHRASE env)")
    parser.add_argument("--port", type=int, help="SSH port (overrides SSH_PORT env)")
    parser.add_argument("--no-verify-host", action="store_true", help="Disable SSH host key verification")
    parser.add_argument(
        "--remote-command",
        default=DEFAULT_REMOTE_COMMAND,
        help="Shell started on the SSH host (default: %(default)s)",
    )
    return parser


def open_session(args: argparse.Namespace) -> Session:
    if config.SSH_HOST:
        channel = ParamikoChannel.connect(
            config.SSH_HOST,
            user=config.SSH_USER,
            port=config.SSH_PORT,
            password=config.SSH_PASSWORD,
            key_path=config.SSH_KEY_PATH,
            key_passphrase=config.SSH_KEY_PASSPHRASE,
            verify_host_key=config.SSH_VERIFY_HOST_KEY,
            remote_command=args.remote_command,
        )
        return Session(channel=channel, timeout=config.TIMEOUT, multiplex=not args.sequential)
    return Session(config.COMMAND, timeout=config.TIMEOUT, multiplex=not args.sequential)


def main(argv: Optional[List[str]] = None, stdin=None, stdout=None) -> int:
    # Force UTF-8 I/O so remote output never hits a narrow console codec
    if stdin is None:
        stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    if stdout is None:
        stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)

    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config.load_from_env()
    except ValueError as exc:
        parser.error(f"invalid environment setting: {exc}")

    if args.command: config.COMMAND = args.command
    if args.timeout is not None: config.TIMEOUT = args.timeout
    if args.log_dir: config.LOG_DIR = args.log_dir
    if args.host: config.SSH_HOST = args.host
    if args.user: config.SSH_USER = args.user
    if args.password: config.SSH_PASSWORD = args.password
    if args.key: config.SSH_KEY_PATH = args.key
    if args.passphrase: config.SSH_KEY_PASSPHRASE = args.passphrase
    if args.port: config.SSH_PORT = args.port
    if args.no_verify_host: config.SSH_VERIFY_HOST_KEY = False

    if not math.isfinite(config.TIMEOUT) or config.TIMEOUT <= 0:
        parser.error("timeout must be a positive number of seconds")

    try:
        session = open_session(args)
    except IPCSessionError as exc:
        log_error(f"failed to open session: {exc}")
        return 1

    log_error(f"session started: {session.name} timeout={session.timeout()}")

    exit_code = 0
    try:
        for line in stdin:
            command = line.rstrip("\n")
            if not command.strip():
                continue
            try:
                result = session.send(command)
            except CommandTimeoutError as exc:
                _write_response(stdout, {"command": command, "error": str(exc)})
                continue
            except IPCSessionError as exc:
                _write_response(stdout, {"command": command, "error": str(exc)})
                exit_code = 1
                break
            response = {"command": command}
            response.update(result.as_dict())
            response["duration"] = round(result.duration, 6)
            _write_response(stdout, response)
    finally:
        log_error("shutting down...")
        session.close()
    return exit_code


if __name__ == "__main__":
    sys.exit(main())
