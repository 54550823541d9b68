import queue
import socket
import threading
import time

import pytest

from hopfleet.chain import ConnectionManager
from hopfleet.config import config
from hopfleet.registry import HostRegistry
from hopfleet.view import ConsoleLayout


class FakeChannel:
    """Scripted stand-in for a paramiko exec channel."""

    def __init__(self, chunks=None, eof=True, fail_pty=False, fail_exec=False):
        self.queue = queue.Queue()
        for chunk in chunks or []:
            self.queue.put(chunk)
        if eof:
            self.queue.put(b"")
        self.fail_pty = fail_pty
        self.fail_exec = fail_exec
        self.timeout = None
        self.pty = None
        self.command = None
        self.combined = False
        self.closed = False
        self.eof_seen = False
        self.reads_started = 0

    def feed(self, data):
        self.queue.put(data)

    def end(self):
        self.queue.put(b"")

    def get_pty(self, term="vt100", width=80, height=24):
        if self.fail_pty:
            raise OSError("pty refused")
        self.pty = (term, height, width)

    def set_combine_stderr(self, combine):
        self.combined = combine

    def exec_command(self, command):
        if self.fail_exec:
            raise OSError("exec refused")
        self.command = command

    def settimeout(self, timeout):
        self.timeout = timeout

    def recv(self, size):
        self.reads_started += 1
        try:
            item = self.queue.get(timeout=self.timeout)
        except queue.Empty:
            raise socket.timeout()
        if isinstance(item, Exception):
            raise item
        if item == b"":
            self.eof_seen = True
        return item

    def exit_status_ready(self):
        return self.eof_seen

    def recv_exit_status(self):
        return 0

    def close(self):
        self.closed = True


class FakeTransport:
    def __init__(self, client):
        self.client = client
        self.active = True

    def is_active(self):
        return self.active and not self.client.closed

    def open_session(self, timeout=None):
        if self.client.fail_open:
            raise OSError("channel open refused")
        return self.client.channel_factory()


class FakeClient:
    def __init__(self, name, via=None):
        self.name = name
        self.via = via
        self.closed = False
        self.fail_open = False
        self.channels = []
        self.transport = FakeTransport(self)
        self.channel_factory = self._default_channel

    def _default_channel(self):
        if self.channels:
            return self.channels.pop(0)
        return FakeChannel([b"hello from " + self.name.encode() + b"\r\n"])

    def get_transport(self):
        return self.transport

    def close(self):
        self.closed = True


class FakeDialer:
    def __init__(self, delay=0.0, fail_hosts=()):
        self.delay = delay
        self.fail_hosts = set(fail_hosts)
        self.lock = threading.Lock()
        self.calls = []
        self.clients = {}

    def dial(self, hop, via=None):
        with self.lock:
            self.calls.append((str(hop), via.name if via is not None else None))
        if self.delay:
            time.sleep(self.delay)
        if hop.host in self.fail_hosts:
            raise OSError(f"connection refused by {hop.host}")
        client = FakeClient(str(hop), via)
        with self.lock:
            self.clients.setdefault(str(hop), []).append(client)
        return client

    def dialed(self):
        with self.lock:
            return [call[0] for call in self.calls]


class RecordingLayout(ConsoleLayout):
    def __init__(self, rows=40, cols=120):
        super().__init__(rows=rows, cols=cols)
        self.history = []

    def reflow(self, titles):
        super().reflow(titles)
        self.history.append(list(self.order))


@pytest.fixture(autouse=True)
def _quiet_config(monkeypatch):
    monkeypatch.setattr(config, "EVENT_LOG", None)
    monkeypatch.setattr("hopfleet.session.READ_POLL_INTERVAL", 0.05)


@pytest.fixture
def dialer():
    return FakeDialer()


@pytest.fixture
def connections(dialer):
    return ConnectionManager(dialer)


@pytest.fixture
def layout():
    return RecordingLayout()


@pytest.fixture
def registry(connections, layout, tmp_path):
    reg = HostRegistry(connections, layout, log_dir=str(tmp_path))
    yield reg
    reg.close_all()
