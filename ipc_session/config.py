import os
from typing import Optional

# ========= Static config =========
DEFAULT_COMMAND = "sh"
DEFAULT_TIMEOUT = 60.0
READ_CHUNK_SIZE = 4096
POLL_INTERVAL = 0.02
FLUSH_WINDOW = 0.0
FLUSH_LIMIT = 1 << 20

CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
DEFAULT_REMOTE_COMMAND = "sh"

# ========= Protocol =========
SENTINEL_PREFIX = "_EoT_"
UNPARSED_EXIT_STATUS = -666
STREAM_NAMES = ("stdout", "stderr")
TEXT_ENCODING = "utf-8"

# ========= Runtime Configuration =========
class RuntimeConfig:
    def __init__(self):
        self.COMMAND: str = DEFAULT_COMMAND
        self.TIMEOUT: float = DEFAULT_TIMEOUT
        self.LOG_DIR: Optional[str] = None
        self.SSH_HOST: Optional[str] = None
        self.SSH_USER: Optional[str] = None
        self.SSH_PASSWORD: Optional[str] = None
        self.SSH_PORT: int = 22
        self.SSH_KEY_PATH: Optional[str] = None
        self.SSH_KEY_PASSPHRASE: Optional[str] = None
        self.SSH_VERIFY_HOST_KEY: bool = True

    def load_from_env(self):
        self.COMMAND = os.environ.get("IPC_SESSION_COMMAND", self.COMMAND)
        self.LOG_DIR = os.environ.get("IPC_SESSION_LOG_DIR", self.LOG_DIR)
        timeout_env = os.environ.get("IPC_SESSION_TIMEOUT")
        if timeout_env:
            self.TIMEOUT = float(timeout_env)

        self.SSH_HOST = os.environ.get("SSH_HOST", self.SSH_HOST)
        self.SSH_USER = os.environ.get("SSH_USER", self.SSH_USER)
        self.SSH_PASSWORD = os.environ.get("SSH_PASSWORD", self.SSH_PASSWORD)
        self.SSH_PORT = int(os.environ.get("SSH_PORT", self.SSH_PORT))
        self.SSH_KEY_PATH = os.environ.get("SSH_KEY_PATH", self.SSH_KEY_PATH)
        self.SSH_KEY_PASSPHRASE = os.environ.get("SSH_KEY_PASSPHRASE", self.SSH_KEY_PASSPHRASE)

        verify_host_env = os.environ.get("SSH_VERIFY_HOST_KEY")
        if verify_host_env is not None:
            self.SSH_VERIFY_HOST_KEY = verify_host_env.lower() in ("true", "1", "yes")

# Global instance
config = RuntimeConfig()
