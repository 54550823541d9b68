import os
import re
import getpass
from typing import Optional

# ========= Static config =========
DEFAULT_PORT = 22
CONNECT_TIMEOUT = 10
KEEPALIVE_INTERVAL = 30
BUFFER_SIZE = 4096
READ_POLL_INTERVAL = 0.5  # seconds a channel read may block before the loop re-checks cancellation

PTY_TERM = "xterm"
DEFAULT_PTY_ROWS = 24
DEFAULT_PTY_COLS = 80
DEFAULT_CONSOLE_ROWS = 48
DEFAULT_CONSOLE_COLS = 200

MAX_PANE_BUFFER_BYTES = 2_000_000
DEFAULT_READ_MAX_CHARS = 20000
MAX_READ_MAX_CHARS = 200000

HOST_KEY_POLICIES = ("known_hosts", "warn", "accept")

# ========= Output cleanup =========
ANSI_ESCAPE = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f]")


def _default_user() -> str:
    try:
        return getpass.getuser()
    except Exception:
        return "root"


# ========= Runtime Configuration =========
class ServerConfig:
    def __init__(self):
        self.USER: str = _default_user()
        self.SSH_DIR: str = os.path.join(os.path.expanduser("~"), ".ssh")
        self.KNOWN_HOSTS: Optional[str] = None
        self.HOST_KEY_POLICY: str = "known_hosts"
        self.CONNECT_TIMEOUT: float = CONNECT_TIMEOUT
        self.KEEPALIVE_INTERVAL: int = KEEPALIVE_INTERVAL
        self.LOG_DIR: str = os.getcwd()
        self.EVENT_LOG: Optional[str] = None
        self.CONSOLE_ROWS: int = DEFAULT_CONSOLE_ROWS
        self.CONSOLE_COLS: int = DEFAULT_CONSOLE_COLS

    def load_from_env(self):
        self.USER = os.environ.get("HOPFLEET_USER", self.USER)
        self.SSH_DIR = os.environ.get("HOPFLEET_SSH_DIR", self.SSH_DIR)
        self.KNOWN_HOSTS = os.environ.get("HOPFLEET_KNOWN_HOSTS", self.KNOWN_HOSTS)
        self.LOG_DIR = os.environ.get("HOPFLEET_LOG_DIR", self.LOG_DIR)
        self.EVENT_LOG = os.environ.get("HOPFLEET_EVENT_LOG", self.EVENT_LOG)
        self.CONNECT_TIMEOUT = float(os.environ.get("HOPFLEET_CONNECT_TIMEOUT", self.CONNECT_TIMEOUT))
        self.CONSOLE_ROWS = int(os.environ.get("HOPFLEET_ROWS", self.CONSOLE_ROWS))
        self.CONSOLE_COLS = int(os.environ.get("HOPFLEET_COLS", self.CONSOLE_COLS))

        policy_env = os.environ.get("HOPFLEET_HOST_KEY_POLICY")
        if policy_env is not None:
            self.set_host_key_policy(policy_env)

    def set_host_key_policy(self, policy: str) -> None:
        policy = (policy or "").strip().lower()
        if policy not in HOST_KEY_POLICIES:
            raise ValueError(f"host key policy must be one of: {', '.join(HOST_KEY_POLICIES)}")
        self.HOST_KEY_POLICY = policy

    @property
    def known_hosts_path(self) -> str:
        return self.KNOWN_HOSTS or os.path.join(self.SSH_DIR, "known_hosts")

# Global instance
config = ServerConfig()
