"""Shared fixtures for session tests."""

from collections.abc import Iterator

import pytest

from ipc_session import config as config_module
from ipc_session import main as main_module
from ipc_session import session as session_module
from ipc_session.config import RuntimeConfig
from ipc_session.session import Session

ENV_KEYS: tuple[str, ...] = (
    "IPC_SESSION_COMMAND",
    "IPC_SESSION_TIMEOUT",
    "IPC_SESSION_LOG_DIR",
    "SSH_HOST",
    "SSH_USER",
    "SSH_PASSWORD",
    "SSH_PORT",
    "SSH_KEY_PATH",
    "SSH_KEY_PASSPHRASE",
    "SSH_VERIFY_HOST_KEY",
)


@pytest.fixture(autouse=True)
def fresh_config(monkeypatch: pytest.MonkeyPatch) -> RuntimeConfig:
    """Give every test an unmodified runtime config and a clean environment.

    :param monkeypatch: Pytest monkeypatch fixture.
    :returns: The config instance installed for the test.
    """
    for key in ENV_KEYS:
        monkeypatch.delenv(key, raising=False)
    runtime = RuntimeConfig()
    monkeypatch.setattr(config_module, "config", runtime)
    monkeypatch.setattr(session_module, "config", runtime)
    monkeypatch.setattr(main_module, "config", runtime)
    return runtime


@pytest.fixture
def sh_session() -> Iterator[Session]:
    """Open a local ``sh`` session.

    :yields: Live session, closed after the test.
    """
    session = Session("sh", timeout=10)
    try:
        yield session
    finally:
        session.close()
