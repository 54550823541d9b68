import threading
import time

import pytest

from hopfleet.errors import ExecutionError, SessionClosedError
from hopfleet.session import CancelToken, CancellableReader, RunCancelled, Session

from conftest import FakeChannel, FakeDialer


@pytest.fixture
def make_session(connections, layout, tmp_path):
    made = []

    def _make(title="web1", chain=None, place=True):
        pane = layout.open_pane(title)
        session = Session(title, pane, connections, log_dir=str(tmp_path))
        assert session.connect(chain or f"bastion/{title}")
        made.append(session)
        if place:
            layout.reflow([s.title for s in made])
        return session

    yield _make
    for session in made:
        session.close()


def _wait_for(predicate, timeout=2.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return False


def _run_in_thread(session, command, results, sink=None):
    def target():
        results.append(session.run(command, sink))

    thread = threading.Thread(target=target, daemon=True)
    thread.start()
    return thread


def test_cancellable_reader_stops_at_boundary():
    token = CancelToken()
    reader = CancellableReader(FakeChannel([b"abc"]), token)
    assert reader.read(10) == b"abc"
    token.cancel()
    with pytest.raises(RunCancelled):
        reader.read(10)


def test_run_sends_identical_bytes_to_pane_and_transcript(make_session):
    session = make_session()
    payload = [b"\x1b[1;31mERROR\x1b[0m disk full\r\n", b"\x1b]0;title\x07ok\n"]
    session.client.channels.append(FakeChannel(payload))

    result = session.run("df -h")

    expected = b"".join(payload)
    assert result.finish_reason == "eof"
    assert result.exit_status == 0
    assert result.bytes_copied == len(expected)
    assert session.live.snapshot() == expected
    with open(session.log_path, "rb") as handle:
        assert handle.read() == expected


def test_run_allocates_pty_from_pane_geometry(make_session):
    session = make_session()
    channel = FakeChannel([b"x"])
    session.client.channels.append(channel)

    session.run("top -b -n1")

    assert channel.command == "top -b -n1"
    assert channel.pty == ("xterm", 18, 118)
    assert channel.combined is True
    assert channel.timeout == 0.05
    assert channel.closed


def test_run_uses_default_pty_without_geometry(make_session):
    session = make_session(place=False)
    channel = FakeChannel([b"x"])
    session.client.channels.append(channel)

    session.run("uptime")

    assert channel.pty == ("xterm", 24, 80)


def test_log_file_named_after_title(make_session, tmp_path):
    session = make_session(title="dc1/rack2/web3", chain="dc1/web3")
    assert session.log_path == str(tmp_path / "dc1_rack2_web3.log")


def test_empty_command_is_rejected(make_session):
    session = make_session()
    with pytest.raises(ExecutionError):
        session.run("   ")


def test_cancel_when_idle_returns_immediately(make_session):
    session = make_session()
    began = time.monotonic()
    assert session.cancel() is False
    assert time.monotonic() - began < 0.1
    assert not session.is_running()
    assert session.info()["status"] == "idle"


def test_cancel_blocks_until_loop_exits_and_leaves_no_residue(make_session):
    session = make_session()
    streaming = FakeChannel([b"tick\n"], eof=False)
    session.client.channels.append(streaming)

    results = []
    thread = _run_in_thread(session, "tail -f /var/log/syslog", results)
    assert _wait_for(lambda: session.live.snapshot() == b"tick\n")
    assert session.is_running()

    assert session.cancel() is True
    assert not session.is_running()
    thread.join(1)
    assert not thread.is_alive()
    assert results[0].finish_reason == "cancelled"
    assert streaming.closed

    streaming.feed(b"late bytes\n")
    session.client.channels.append(FakeChannel([b"fresh\n"]))
    session.run("hostname")

    assert session.live.snapshot() == b"tick\nfresh\n"
    with open(session.log_path, "rb") as handle:
        assert handle.read() == b"tick\nfresh\n"


def test_cancel_from_inside_run_thread_does_not_deadlock(make_session):
    session = make_session()
    session.client.channels.append(FakeChannel([b"first\n", b"second\n"], eof=False))

    class CancellingSink:
        def write(self, data):
            session.cancel()
            return len(data)

    result = session.run("yes", CancellingSink())

    assert result.finish_reason == "cancelled"
    assert result.bytes_copied == len(b"first\n")


def test_runs_on_one_session_are_serialized(make_session):
    session = make_session()
    first = FakeChannel([b"one\n"], eof=False)
    second = FakeChannel([b"two\n"], eof=False)
    session.client.channels.extend([first, second])
    threading.Timer(0.3, first.end).start()
    threading.Timer(0.3, second.end).start()

    results = []
    threads = [_run_in_thread(session, "sleep 1", results) for _ in range(2)]
    for thread in threads:
        thread.join(3)

    assert len(results) == 2
    earlier, later = sorted(results, key=lambda r: r.started_at)
    assert earlier.finished_at <= later.started_at
    assert session.live.snapshot() == b"one\ntwo\n"


def test_slow_session_does_not_delay_another(make_session):
    slow = make_session("slow")
    fast = make_session("fast")
    slow.client.channels.append(FakeChannel([], eof=False))
    fast.client.channels.append(FakeChannel([b"done\n"]))

    results = []
    thread = _run_in_thread(slow, "sleep 600", results)
    assert _wait_for(slow.is_running)

    began = time.monotonic()
    result = fast.run("echo done")
    assert time.monotonic() - began < 0.5
    assert result.finish_reason == "eof"
    assert slow.is_running()

    slow.cancel()
    thread.join(1)
    assert results[0].finish_reason == "cancelled"


def test_open_failure_is_execution_error_and_session_survives(make_session):
    session = make_session()
    session.client.fail_open = True
    with pytest.raises(ExecutionError, match="cannot open remote session"):
        session.run("ls")
    assert not session.is_running()
    assert session.last_result.finish_reason == "failed"

    session.client.fail_open = False
    assert session.run("ls").finish_reason == "eof"


@pytest.mark.parametrize("kwargs, message", [
    ({"fail_pty": True}, "cannot allocate pty"),
    ({"fail_exec": True}, "cannot start command"),
])
def test_pty_and_exec_failures_close_the_channel(make_session, kwargs, message):
    session = make_session()
    channel = FakeChannel([b"never"], **kwargs)
    session.client.channels.append(channel)

    with pytest.raises(ExecutionError, match=message):
        session.run("ls")
    assert channel.closed
    assert session.live.snapshot() == b""


def test_stream_error_ends_run_like_eof(make_session):
    session = make_session()
    session.client.channels.append(FakeChannel([b"partial", ConnectionResetError("reset")], eof=False))

    result = session.run("cat big.log")

    assert result.finish_reason == "stream_error"
    assert "reset" in result.error
    assert session.live.snapshot() == b"partial"


def test_run_capture_returns_output_with_escapes(make_session):
    session = make_session()
    session.client.channels.append(FakeChannel([b"\x1b[32mweb1\x1b[0m\r\n"]))
    assert session.run_capture("hostname") == "\x1b[32mweb1\x1b[0m\r\n"


def test_run_regex_returns_groups(make_session):
    session = make_session()
    session.client.channels.append(FakeChannel([b"eth0 10.0.0.5\neth1 10.0.1.7\n"]))
    matches = session.run_regex("ip -br a", r"(eth\d) (\S+)")
    assert matches == [["eth0 10.0.0.5", "eth0", "10.0.0.5"], ["eth1 10.0.1.7", "eth1", "10.0.1.7"]]


def test_run_stream_yields_output_in_background(make_session):
    session = make_session()
    session.client.channels.append(FakeChannel([b"a", b"b", b"c"]))

    stream = session.run_stream("printf abc")

    assert stream.read() == b"abc"
    assert stream.result.finish_reason == "eof"
    assert session.live.snapshot() == b"abc"


def test_run_stream_reports_execution_error(make_session):
    session = make_session()
    session.client.fail_open = True
    stream = session.run_stream("ls")
    with pytest.raises(ExecutionError):
        stream.read()


def test_close_cancels_active_run_and_releases_everything(make_session, connections):
    session = make_session()
    client = session.client
    session.client.channels.append(FakeChannel([b"busy\n"], eof=False))

    results = []
    thread = _run_in_thread(session, "sleep 600", results)
    assert _wait_for(lambda: session.live.snapshot() == b"busy\n")

    session.close()
    thread.join(1)

    assert results[0].finish_reason == "cancelled"
    assert client.closed
    assert session.log_handle.closed
    assert "bastion:22/web1:22" not in connections.cached_prefixes()
    assert "bastion:22" in connections.cached_prefixes()
    with pytest.raises(SessionClosedError):
        session.run("ls")
    session.close()
    assert session.info()["status"] == "closed"


def test_connect_failure_is_reported_not_raised(layout, tmp_path):
    from hopfleet.chain import ConnectionManager

    connections = ConnectionManager(FakeDialer(fail_hosts={"dead"}))
    session = Session("dead", layout.open_pane("dead"), connections, log_dir=str(tmp_path))

    assert session.connect("bastion/dead") is False
    assert "dead:22" in session.connect_error
    with pytest.raises(ExecutionError, match="not connected"):
        session.run("ls")
    session.close()
