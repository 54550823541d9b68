"""Jump-host chain resolution.

A chain such as ``bastion/core-gw:2222/db01`` is reached by dialing
``bastion:22`` directly, tunneling a ``direct-tcpip`` channel through it to
``core-gw:2222``, and tunneling through that client to ``db01:22``. Every
prefix of a resolved chain is cached, so ``bastion/core-gw:2222/db02`` later
only dials ``db02``.

Dialing is single-flight per prefix: when several threads need the same
missing prefix, one of them dials and the others wait for its result.
"""
import socket
import threading
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple
import paramiko

from hopfleet.config import DEFAULT_PORT, config
from hopfleet.auth import AuthMethod, apply_host_key_policy, auth_connect_kwargs, discover_auth_methods
from hopfleet.errors import ConfigurationError, HopConnectError, HopfleetError
from hopfleet.utils import log_error, log_event


@dataclass(frozen=True)
class Hop:
    host: str
    port: int = DEFAULT_PORT
    user: Optional[str] = None

    @property
    def address(self) -> str:
        if ":" in self.host:
            return f"[{self.host}]:{self.port}"
        return f"{self.host}:{self.port}"

    def __str__(self) -> str:
        if self.user:
            return f"{self.user}@{self.address}"
        return self.address


def parse_hop(text: str) -> Hop:
    raw = (text or "").strip()
    if not raw:
        raise ConfigurationError("empty hop in chain")

    user = None
    if "@" in raw:
        user, raw = raw.rsplit("@", 1)
        if not user:
            raise ConfigurationError(f"empty user in hop: {text!r}")

    port_text = None
    if raw.startswith("["):
        host, sep, rest = raw[1:].partition("]")
        if not sep:
            raise ConfigurationError(f"unterminated IPv6 literal: {text!r}")
        if rest:
            if not rest.startswith(":"):
                raise ConfigurationError(f"malformed hop: {text!r}")
            port_text = rest[1:]
    elif raw.count(":") == 1:
        host, port_text = raw.split(":")
    else:
        host = raw

    if not host:
        raise ConfigurationError(f"missing host in hop: {text!r}")

    port = DEFAULT_PORT
    if port_text is not None:
        try:
            port = int(port_text)
        except ValueError:
            raise ConfigurationError(f"invalid port in hop: {text!r}") from None
        if not 0 < port < 65536:
            raise ConfigurationError(f"port out of range in hop: {text!r}")
    return Hop(host=host, port=port, user=user)


def parse_chain(chain: str) -> List[Hop]:
    if not chain or not chain.strip():
        raise ConfigurationError("chain specification is empty")
    return [parse_hop(part) for part in chain.strip().split("/")]


def chain_prefixes(hops: List[Hop]) -> List[str]:
    prefixes = []
    current = ""
    for hop in hops:
        current = f"{current}/{hop}" if current else str(hop)
        prefixes.append(current)
    return prefixes


class ParamikoDialer:
    """Opens an authenticated paramiko client to one hop, optionally through another client."""

    def __init__(
        self,
        user: Optional[str] = None,
        auth_methods: Optional[List[AuthMethod]] = None,
        host_key_policy: Optional[str] = None,
        connect_timeout: Optional[float] = None,
        keepalive: Optional[int] = None,
    ):
        self.user = user
        self.auth_methods = auth_methods
        self.host_key_policy = host_key_policy
        self.connect_timeout = connect_timeout
        self.keepalive = keepalive
        self._methods_lock = threading.Lock()

    def _methods(self) -> List[AuthMethod]:
        with self._methods_lock:
            if self.auth_methods is None:
                self.auth_methods = discover_auth_methods()
            return self.auth_methods

    def _open_socket(self, hop: Hop, via: Optional[paramiko.SSHClient], timeout: float):
        if via is None:
            return socket.create_connection((hop.host, hop.port), timeout=timeout)
        transport = via.get_transport()
        if transport is None or not transport.is_active():
            raise paramiko.SSHException("previous hop transport is not active")
        return transport.open_channel(
            "direct-tcpip",
            (hop.host, hop.port),
            ("127.0.0.1", 0),
            timeout=timeout,
        )

    def dial(self, hop: Hop, via: Optional[paramiko.SSHClient] = None) -> paramiko.SSHClient:
        methods = self._methods()
        timeout = self.connect_timeout or config.CONNECT_TIMEOUT
        sock = self._open_socket(hop, via, timeout)

        client = paramiko.SSHClient()
        try:
            apply_host_key_policy(client, self.host_key_policy)
            client.connect(
                hostname=hop.host,
                port=hop.port,
                username=hop.user or self.user or config.USER,
                sock=sock,
                timeout=timeout,
                banner_timeout=timeout,
                auth_timeout=timeout,
                **auth_connect_kwargs(methods),
            )
        except Exception:
            client.close()
            sock.close()
            raise

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(self.keepalive or config.KEEPALIVE_INTERVAL)
        return client


class _PendingDial:
    def __init__(self):
        self.done = threading.Event()
        self.client: Any = None
        self.error: Optional[BaseException] = None


class ConnectionManager:
    """Prefix cache of authenticated clients.

    A leaf leased through acquire() stays cached until its last lease is
    released; release() then closes it along with any deeper prefixes nobody
    leases. A chain being walked claims its leaf key, and claimed prefixes
    are never evicted, so a walk cannot return a client that release() closed.
    """

    def __init__(self, dialer: Any = None):
        self.dialer = dialer or ParamikoDialer()
        self.lock = threading.Lock()
        self.clients: Dict[str, Any] = {}
        self.pending: Dict[str, _PendingDial] = {}
        self.leases: Dict[str, int] = {}
        self.walking: Dict[str, int] = {}

    def resolve(self, chain: str) -> Any:
        """Return an authenticated client for the last hop of chain."""
        return self._claimed_walk(parse_chain(chain), lease=False)[1]

    def acquire(self, chain: str) -> Tuple[str, Any]:
        """Resolve chain and lease its leaf client; pair with release()."""
        return self._claimed_walk(parse_chain(chain), lease=True)

    def release(self, leaf_key: str) -> None:
        """Drop one lease; close the leaf once nothing uses or tunnels through it."""
        with self.lock:
            remaining = self.leases.get(leaf_key, 0) - 1
            if remaining > 0:
                self.leases[leaf_key] = remaining
                return
            self.leases.pop(leaf_key, None)
            if self._in_use_locked(leaf_key):
                return
            nested = leaf_key + "/"
            doomed = [key for key in self.clients if key == leaf_key or key.startswith(nested)]
            clients = [self.clients.pop(key) for key in sorted(doomed, key=lambda k: k.count("/"), reverse=True)]

        for client in clients:
            self._close_client(client)
        if doomed:
            log_event("connections", {"event": "released", "prefixes": doomed})

    def cached_prefixes(self) -> List[str]:
        with self.lock:
            return sorted(self.clients.keys())

    def close_all(self) -> None:
        with self.lock:
            keys = sorted(self.clients.keys(), key=lambda k: k.count("/"), reverse=True)
            clients = [self.clients.pop(key) for key in keys]
            self.leases.clear()
        for client in clients:
            self._close_client(client)

    def _in_use_locked(self, leaf_key: str) -> bool:
        nested = leaf_key + "/"
        if any(key.startswith(nested) for key in self.leases):
            return True
        return any(key == leaf_key or key.startswith(nested) for key in self.walking)

    def _claimed_walk(self, hops: List[Hop], lease: bool) -> Tuple[str, Any]:
        leaf_key = chain_prefixes(hops)[-1]
        with self.lock:
            self.walking[leaf_key] = self.walking.get(leaf_key, 0) + 1
        try:
            client = self._walk(hops)[1]
        except BaseException:
            with self.lock:
                self._unclaim_locked(leaf_key)
            raise
        # the lease replaces the claim without a gap release() could slip into
        with self.lock:
            if lease:
                self.leases[leaf_key] = self.leases.get(leaf_key, 0) + 1
            self._unclaim_locked(leaf_key)
        return leaf_key, client

    def _unclaim_locked(self, leaf_key: str) -> None:
        remaining = self.walking.get(leaf_key, 0) - 1
        if remaining > 0:
            self.walking[leaf_key] = remaining
        else:
            self.walking.pop(leaf_key, None)

    def _walk(self, hops: List[Hop]) -> Tuple[str, Any]:
        client = None
        prefix = ""
        for hop, prefix in zip(hops, chain_prefixes(hops)):
            client = self._obtain(prefix, hop, client)
        return prefix, client

    def _obtain(self, prefix: str, hop: Hop, via: Any) -> Any:
        with self.lock:
            cached = self.clients.get(prefix)
            if cached is not None:
                return cached
            pending = self.pending.get(prefix)
            owner = pending is None
            if owner:
                pending = _PendingDial()
                self.pending[prefix] = pending

        if not owner:
            pending.done.wait()
            if pending.error is not None:
                raise HopConnectError(
                    f"concurrent dial of {prefix} failed: {pending.error}", hop=str(hop), prefix=prefix
                ) from pending.error
            return pending.client

        try:
            client = self._dial(prefix, hop, via)
        except BaseException as exc:
            with self.lock:
                self.pending.pop(prefix, None)
            pending.error = exc
            pending.done.set()
            raise

        with self.lock:
            self.clients[prefix] = client
            self.pending.pop(prefix, None)
        pending.client = client
        pending.done.set()
        return client

    def _dial(self, prefix: str, hop: Hop, via: Any) -> Any:
        log_event("connections", {"event": "dialing", "prefix": prefix, "tunneled": via is not None})
        try:
            client = self.dialer.dial(hop, via)
        except HopfleetError:
            raise
        except Exception as exc:
            log_event("connections", {"event": "dial_failed", "prefix": prefix, "error": str(exc)})
            raise HopConnectError(f"cannot connect {prefix}: {exc}", hop=str(hop), prefix=prefix) from exc
        log_event("connections", {"event": "connected", "prefix": prefix})
        return client

    @staticmethod
    def _close_client(client: Any) -> None:
        try:
            client.close()
        except Exception as exc:
            log_error(f"closing client failed: {exc}")
