"""Integration tests for the session protocol against a local ``sh``."""

import json

import pytest

from ipc_session.config import UNPARSED_EXIT_STATUS
from ipc_session.errors import CommandTimeoutError
from ipc_session.errors import IPCSessionError
from ipc_session.errors import SessionDeadError
from ipc_session.errors import SpawnError
from ipc_session.errors import StreamReadError
from ipc_session.session import CommandResult
from ipc_session.session import Session


def test_echo_hello(sh_session: Session) -> None:
    """A plain echo captures stdout only and exits zero.

    :param sh_session: Live session.
    """
    result: CommandResult = sh_session.send("echo hello")
    assert result.stdout == "hello\n"
    assert result.stderr == ""
    assert result.exit_status == 0
    assert result.errno == 0
    assert result.command == "echo hello"


def test_exit_status_of_subshell(sh_session: Session) -> None:
    """A subshell exit reports its status without ending the session.

    :param sh_session: Live session.
    """
    result: CommandResult = sh_session.send("(exit 7)")
    assert result.exit_status == 7
    assert result.stdout == ""
    assert result.stderr == ""
    assert sh_session.is_alive() is True


def test_stdout_and_stderr_are_separated(sh_session: Session) -> None:
    """Each stream captures only what the command wrote to it.

    :param sh_session: Live session.
    """
    result: CommandResult = sh_session.send("echo out1; echo err1 >&2")
    assert result.stdout == "out1\n"
    assert result.stderr == "err1\n"
    assert result.exit_status == 0


@pytest.mark.parametrize("status", [0, 1, 2, 42, 128, 255])
def test_exit_status_fidelity(sh_session: Session, status: int) -> None:
    """Every exit status in 0..255 round-trips.

    :param sh_session: Live session.
    :param status: Status returned by the command.
    """
    assert sh_session.call(f"sh -c 'exit {status}'") == status


def test_multiline_output_round_trip(sh_session: Session) -> None:
    """Captured text is exactly the command's output.

    :param sh_session: Live session.
    """
    result: CommandResult = sh_session.send("printf 'a\\n\\nb  \\n'; printf 'x\\ny\\n' >&2")
    assert result.stdout == "a\n\nb  \n"
    assert result.stderr == "x\ny\n"


def test_output_without_trailing_newline(sh_session: Session) -> None:
    """Output that does not end in a newline is still captured.

    :param sh_session: Live session.
    """
    result: CommandResult = sh_session.send("printf abc; printf def >&2")
    assert result.stdout == "abc"
    assert result.stderr == "def"
    assert result.exit_status == 0


def test_sequential_isolation(sh_session: Session) -> None:
    """Consecutive commands never see each other's output.

    :param sh_session: Live session.
    """
    first: CommandResult = sh_session.send("true")
    second: CommandResult = sh_session.send("echo second; echo warn >&2")
    third: CommandResult = sh_session.send(":")
    assert (first.stdout, first.stderr, first.exit_status) == ("", "", 0)
    assert (second.stdout, second.stderr) == ("second\n", "warn\n")
    assert (third.stdout, third.stderr, third.exit_status) == ("", "", 0)


def test_send_joins_arguments(sh_session: Session) -> None:
    """Several arguments form one space-separated command line.

    :param sh_session: Live session.
    """
    result: CommandResult = sh_session.send("echo", "one", "two")
    assert result.stdout == "one two\n"
    assert result.command == "echo one two"
    assert sh_session.call("test", "1", "=", "2") == 1


def test_shell_state_persists(sh_session: Session) -> None:
    """Working directory and variables survive between commands.

    :param sh_session: Live session.
    """
    sh_session.send("cd /")
    sh_session.send("GREETING=persistent")
    assert sh_session.send("pwd").stdout == "/\n"
    assert sh_session.send('echo "$GREETING"').stdout == "persistent\n"


def test_failed_command_reports_status_and_stderr(sh_session: Session) -> None:
    """A failing command is a normal result, not an error.

    :param sh_session: Live session.
    """
    result: CommandResult = sh_session.send("ls /definitely/not/here")
    assert result.exit_status != 0
    assert result.stdout == ""
    assert "/definitely/not/here" in result.stderr


def test_unicode_output(sh_session: Session) -> None:
    """UTF-8 output is decoded.

    :param sh_session: Live session.
    """
    assert sh_session.send("echo 'héllo ✔'").stdout == "héllo ✔\n"


def test_accessors_are_idempotent(sh_session: Session) -> None:
    """Accessors keep returning the last result until the next send.

    :param sh_session: Live session.
    """
    assert sh_session.stdout() == ""
    assert sh_session.errno() == UNPARSED_EXIT_STATUS
    assert sh_session.last_result() is None

    sh_session.send("echo a; echo b >&2; (exit 3)")
    for _ in range(3):
        assert sh_session.stdout() == "a\n"
        assert sh_session.stderr() == "b\n"
        assert sh_session.errno() == 3
        assert sh_session.exit_status() == 3

    sh_session.send("echo c")
    assert sh_session.stdout() == "c\n"
    assert sh_session.stderr() == ""
    assert sh_session.errno() == 0


def test_as_dict_matches_result(sh_session: Session) -> None:
    """The mapping form carries stdout, stderr and errno.

    :param sh_session: Live session.
    """
    result: CommandResult = sh_session.send("echo x")
    assert result.as_dict() == {"stdout": "x\n", "stderr": "", "errno": 0}


def test_heavy_stderr_does_not_block_stdout(sh_session: Session) -> None:
    """Filling the stderr pipe before stdout completes still works.

    :param sh_session: Live session.
    """
    result: CommandResult = sh_session.send("head -c 200000 /dev/zero | tr '\\0' x >&2; echo done")
    assert result.stdout == "done\n"
    assert len(result.stderr) == 200000
    assert set(result.stderr) == {"x"}


def test_sequential_draining() -> None:
    """The stdout-then-stderr mode returns the same results."""
    session = Session("sh", timeout=10, multiplex=False)
    try:
        result: CommandResult = session.send("echo out1; echo err1 >&2; (exit 4)")
        assert (result.stdout, result.stderr, result.exit_status) == ("out1\n", "err1\n", 4)
    finally:
        session.close()


def test_timeout_enforced_and_session_recovers() -> None:
    """A slow command times out; its late output never leaks into the next result."""
    session = Session("sh", timeout=0.5)
    try:
        with pytest.raises(CommandTimeoutError) as excinfo:
            session.send("sleep 1.5; echo late; echo late-err >&2")
        assert excinfo.value.stream == "stdout"
        assert session.last_result() is None
        assert session.is_dead is False

        session.timeout(10)
        result: CommandResult = session.send("echo after")
        assert result.stdout == "after\n"
        assert result.stderr == ""
        assert result.exit_status == 0
    finally:
        session.close()


def test_timeout_get_and_set(sh_session: Session) -> None:
    """The timeout accepts positive seconds and rejects anything else.

    :param sh_session: Live session.
    """
    assert sh_session.timeout() == 10.0
    assert sh_session.timeout(2.5) == 2.5
    assert sh_session.timeout() == 2.5
    for bad in (0, -1, float("inf"), "5", True):
        with pytest.raises(ValueError):
            sh_session.timeout(bad)
    assert sh_session.timeout() == 2.5


def test_default_timeout_from_config(fresh_config) -> None:
    """Sessions without an explicit timeout use the configured default.

    :param fresh_config: Runtime config installed for the test.
    """
    fresh_config.TIMEOUT = 12.0
    session = Session("sh")
    try:
        assert session.timeout() == 12.0
    finally:
        session.close()


def test_shell_exit_kills_session(sh_session: Session) -> None:
    """A command that ends the shell is a read error and the session dies.

    :param sh_session: Live session.
    """
    sh_session.send("echo before")
    with pytest.raises(StreamReadError):
        sh_session.send("exit 3")
    assert sh_session.is_dead is True
    assert sh_session.is_alive() is False
    assert sh_session.stdout() == "before\n"

    with pytest.raises(SessionDeadError):
        sh_session.send("echo again")


def test_custom_handler_receives_errors() -> None:
    """A handler that returns turns fatal conditions into ``None`` results."""
    seen: list[IPCSessionError] = []
    session = Session("sh", timeout=0.3, handler=seen.append)
    try:
        assert session.send("sleep 1") is None
        assert isinstance(seen[0], CommandTimeoutError)
        assert session.call("sleep 1") == UNPARSED_EXIT_STATUS
        assert len(seen) == 2
        assert session.handler() is not None
    finally:
        session.close()


def test_handler_can_be_replaced(sh_session: Session) -> None:
    """The handler accessor swaps the error policy.

    :param sh_session: Live session.
    """
    seen: list[IPCSessionError] = []
    sh_session.handler(seen.append)
    assert sh_session.handler() == seen.append
    sh_session.close()
    assert sh_session.send("echo x") is None
    assert isinstance(seen[0], SessionDeadError)


def test_spawn_failure_raises() -> None:
    """A child that cannot be started is a spawn error."""
    with pytest.raises(SpawnError):
        Session(["/nonexistent/ipc-session-shell"])


def test_spawn_failure_through_handler() -> None:
    """With a returning handler the session is created dead."""
    seen: list[IPCSessionError] = []
    session = Session(["/nonexistent/ipc-session-shell"], handler=seen.append)
    assert isinstance(seen[0], SpawnError)
    assert session.is_dead is True
    assert session.is_alive() is False
    assert session.send("echo x") is None
    assert isinstance(seen[1], SessionDeadError)


def test_spawn_failure_from_command_string() -> None:
    """A command line naming a missing program fails at construction."""
    seen: list[IPCSessionError] = []
    session = Session("/nonexistent/ipc-session-shell", handler=seen.append)
    assert len(seen) == 1
    assert isinstance(seen[0], SpawnError)
    assert session.is_dead is True
    assert session.send("echo x") is None
    assert isinstance(seen[1], SessionDeadError)


def test_close_marks_session_dead() -> None:
    """Closing ends the child and refuses further commands."""
    session = Session("sh", timeout=5)
    session.send("echo hi")
    session.close()
    assert session.is_alive() is False
    assert session.info()["death_reason"] == "closed"
    with pytest.raises(SessionDeadError):
        session.send("echo hi")


def test_info_reports_state(sh_session: Session) -> None:
    """Info summarises the session.

    :param sh_session: Live session.
    """
    sh_session.send("(exit 9)")
    info: dict[str, object] = sh_session.info()
    assert info["name"] == "sh"
    assert info["alive"] is True
    assert info["commands_sent"] == 1
    assert info["last_command"] == "(exit 9)"
    assert info["last_errno"] == 9
    assert info["multiplex"] is True


def test_json_lines_log(tmp_path) -> None:
    """Every command leaves IN and OUT records in the session log.

    :param tmp_path: Pytest temporary directory.
    """
    log_path = tmp_path / "session.log"
    session = Session("sh", timeout=5, log_path=str(log_path))
    try:
        session.send("echo logged")
    finally:
        session.close()
    records: list[dict[str, object]] = [json.loads(line) for line in log_path.read_text().splitlines()]
    events: list[object] = [record["event"] for record in records]
    assert events[0] == "session_created"
    assert "command_sent" in events
    assert "session_closed" in events
    finished = next(record for record in records if record["event"] == "command_finished")
    assert finished["dir"] == "OUT"
    assert finished["stdout"] == "logged\n"
    assert finished["errno"] == 0


def test_log_dir_from_config(fresh_config, tmp_path) -> None:
    """A configured log directory gets one log file per session.

    :param fresh_config: Runtime config installed for the test.
    :param tmp_path: Pytest temporary directory.
    """
    fresh_config.LOG_DIR = str(tmp_path / "logs")
    session = Session("sh", timeout=5)
    try:
        session.send("true")
    finally:
        session.close()
    assert session.log_path is not None
    assert session.log_path.startswith(fresh_config.LOG_DIR)
    assert (tmp_path / "logs").is_dir()
    assert len(list((tmp_path / "logs").iterdir())) == 1
