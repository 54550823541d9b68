"""Credential discovery and host key policy for hop handshakes.

Key files are the ``id_*`` files (public halves excluded) in the SSH directory,
tried in name order; a running agent, when ``SSH_AUTH_SOCK`` is set, is tried
last. Host key handling is an explicit choice:

- ``known_hosts``: system and user known_hosts are loaded, unknown keys are rejected
- ``warn``: unknown keys are accepted and reported
- ``accept``: unknown keys are accepted silently
"""
import os
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional
import paramiko

from hopfleet.config import config
from hopfleet.errors import ConfigurationError
from hopfleet.utils import log_error


@dataclass(frozen=True)
class AuthMethod:
    kind: str  # "key" or "agent"
    source: str  # key file path or agent socket


class _ReportingPolicy(paramiko.MissingHostKeyPolicy):
    def missing_host_key(self, client, hostname, key):
        log_error(f"accepting unknown {key.get_name()} host key for {hostname}")


def discover_auth_methods(
    ssh_dir: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> List[AuthMethod]:
    ssh_dir = ssh_dir or config.SSH_DIR
    environ = os.environ if environ is None else environ

    methods: List[AuthMethod] = []
    try:
        names = sorted(os.listdir(ssh_dir))
    except OSError as exc:
        log_error(f"cannot list ssh dir {ssh_dir}: {exc}")
        names = []

    for name in names:
        if not name.startswith("id_") or name.endswith(".pub"):
            continue
        path = os.path.join(ssh_dir, name)
        if not os.path.isfile(path) or not os.access(path, os.R_OK):
            continue
        methods.append(AuthMethod("key", path))

    socket_path = environ.get("SSH_AUTH_SOCK")
    if socket_path:
        methods.append(AuthMethod("agent", socket_path))

    if not methods:
        raise ConfigurationError(f"no auth method available (no id_* keys in {ssh_dir} and no SSH agent)")
    return methods


def auth_connect_kwargs(methods: List[AuthMethod]) -> Dict[str, Any]:
    """paramiko SSHClient.connect arguments; key files are tried before the agent."""
    return {
        "key_filename": [m.source for m in methods if m.kind == "key"] or None,
        "allow_agent": any(m.kind == "agent" for m in methods),
        "look_for_keys": False,
    }


def apply_host_key_policy(client: paramiko.SSHClient, policy: Optional[str] = None) -> None:
    policy = policy or config.HOST_KEY_POLICY
    if policy == "known_hosts":
        client.load_system_host_keys()
        known_hosts = config.known_hosts_path
        if os.path.exists(known_hosts):
            client.load_system_host_keys(known_hosts)
        client.set_missing_host_key_policy(paramiko.RejectPolicy())
    elif policy == "warn":
        client.set_missing_host_key_policy(_ReportingPolicy())
    elif policy == "accept":
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
    else:
        raise ConfigurationError(f"unknown host key policy: {policy}")
