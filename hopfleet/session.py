import os
import io
import re
import queue
import socket
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Tuple

from hopfleet.config import (
    BUFFER_SIZE, READ_POLL_INTERVAL, PTY_TERM,
    DEFAULT_PTY_ROWS, DEFAULT_PTY_COLS, config
)
from hopfleet.errors import ExecutionError, SessionClosedError
from hopfleet.mux import OutputMultiplexer
from hopfleet.utils import find_matches, log_error, log_event, log_file_name


class CancelToken:
    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class CancellableReader:
    """Channel reader that refuses to start a new read once its token is cancelled.

    A read already in progress is never interrupted. A read that times out
    returns None so the caller gets back to a cancellation boundary.
    """

    def __init__(self, channel: Any, token: CancelToken):
        self.channel = channel
        self.token = token

    def read(self, size: int = BUFFER_SIZE) -> Optional[bytes]:
        if self.token.cancelled:
            raise RunCancelled()
        try:
            return self.channel.recv(size)
        except socket.timeout:
            return None


class RunCancelled(Exception):
    pass


@dataclass
class RunResult:
    command: str
    started_at: float
    finished_at: float = 0.0
    bytes_copied: int = 0
    finish_reason: str = ""
    exit_status: Optional[int] = None
    error: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "command": self.command,
            "bytes_copied": self.bytes_copied,
            "finish_reason": self.finish_reason,
            "exit_status": self.exit_status,
            "error": self.error,
            "duration": round(self.finished_at - self.started_at, 3),
        }


class OutputStream:
    """Byte stream fed by a background run; iterate it or read() it to the end."""

    _END = object()

    def __init__(self):
        self.chunks: "queue.Queue[Any]" = queue.Queue()
        self.error: Optional[BaseException] = None
        self.result: Optional[RunResult] = None

    def write(self, data: bytes) -> int:
        self.chunks.put(bytes(data))
        return len(data)

    def finish(self, result: Optional[RunResult] = None, error: Optional[BaseException] = None) -> None:
        self.result = result
        self.error = error
        self.chunks.put(self._END)

    def __iter__(self) -> Iterator[bytes]:
        while True:
            chunk = self.chunks.get()
            if chunk is self._END:
                self.chunks.put(self._END)
                if self.error is not None:
                    raise self.error
                return
            yield chunk

    def read(self) -> bytes:
        return b"".join(self)


class Session:
    """One remote host: its leaf client, its transcript and its command slot.

    Commands run one at a time. cancel() asks the running command to stop
    copying at its next read boundary and waits until it has released the
    slot; the remote process itself is left alone.
    """

    def __init__(self, title: str, live: Any, connections: Any, log_dir: Optional[str] = None):
        self.title = title
        self.live = live
        self.connections = connections

        self.chain = ""
        self.leaf_key: Optional[str] = None
        self.client: Any = None
        self.connect_error = ""
        self.created_at = datetime.now()

        self.cond = threading.Condition()
        self.busy = False
        self.active_token: Optional[CancelToken] = None
        self.run_thread: Optional[int] = None
        self.closed = False

        self.current_command = ""
        self.last_result: Optional[RunResult] = None
        self.run_count = 0

        self.log_path = os.path.join(log_dir or config.LOG_DIR, log_file_name(title))
        self.log_handle = open(self.log_path, "wb")
        self._log_session({"event": "session_created", "log_path": self.log_path})

    def _log_session(self, payload: Dict[str, Any]) -> None:
        data = {"title": self.title}
        data.update(payload)
        log_event("session", data)

    def connect(self, chain: str) -> bool:
        try:
            self.leaf_key, self.client = self.connections.acquire(chain)
            self.chain = chain
            self._log_session({"event": "connected", "chain": chain})
            return True
        except Exception as exc:
            self.connect_error = str(exc)
            self._log_session({"event": "connect_failed", "chain": chain, "error": str(exc)})
            return False

    def is_running(self) -> bool:
        with self.cond:
            return self.busy

    def _acquire_slot(self) -> CancelToken:
        with self.cond:
            while self.busy and not self.closed:
                self.cond.wait()
            if self.closed:
                raise SessionClosedError(f"session {self.title} is closed")
            token = CancelToken()
            self.busy = True
            self.active_token = token
            self.run_thread = threading.get_ident()
            return token

    def _release_slot(self, token: CancelToken) -> None:
        with self.cond:
            self.busy = False
            self.run_thread = None
            if self.active_token is token:
                self.active_token = None
            self.cond.notify_all()

    def _pty_size(self) -> Tuple[int, int]:
        try:
            geometry = self.live.geometry()
        except Exception as exc:
            log_error(f"{self.title}: geometry query failed: {exc}")
            geometry = None
        if not geometry or geometry[0] <= 0 or geometry[1] <= 0:
            return DEFAULT_PTY_ROWS, DEFAULT_PTY_COLS
        return geometry

    def _open_channel(self, command: str) -> Any:
        transport = self.client.get_transport() if self.client else None
        if transport is None or not transport.is_active():
            raise ExecutionError(f"{self.title}: not connected")

        try:
            channel = transport.open_session(timeout=config.CONNECT_TIMEOUT)
        except Exception as exc:
            raise ExecutionError(f"{self.title}: cannot open remote session: {exc}") from exc

        try:
            rows, cols = self._pty_size()
            channel.get_pty(term=PTY_TERM, width=cols, height=rows)
        except Exception as exc:
            channel.close()
            raise ExecutionError(f"{self.title}: cannot allocate pty: {exc}") from exc

        channel.set_combine_stderr(True)
        try:
            channel.exec_command(command)
        except Exception as exc:
            channel.close()
            raise ExecutionError(f"{self.title}: cannot start command: {exc}") from exc

        channel.settimeout(READ_POLL_INTERVAL)
        return channel

    def _copy(self, channel: Any, token: CancelToken, result: RunResult, extra_sink: Any) -> None:
        mux = OutputMultiplexer(self.live, self.log_handle, extra_sink, title=self.title)
        reader = CancellableReader(channel, token)
        while True:
            try:
                data = reader.read(BUFFER_SIZE)
            except RunCancelled:
                result.finish_reason = "cancelled"
                return
            except Exception as exc:
                result.finish_reason = "stream_error"
                result.error = str(exc)
                return
            if data is None:
                continue
            if not data:
                result.finish_reason = "eof"
                return
            try:
                mux.write(data)
            except Exception as exc:
                result.finish_reason = "sink_error"
                result.error = str(exc)
                return
            result.bytes_copied += len(data)

    def run(self, command: str, extra_sink: Any = None) -> RunResult:
        """Run command to completion, streaming into the pane, the transcript and extra_sink."""
        if not command or not command.strip():
            raise ExecutionError("command is required")

        token = self._acquire_slot()
        result = RunResult(command=command, started_at=time.time())
        try:
            self.current_command = command
            self.run_count += 1
            self._log_session({"event": "run_started", "command": command})

            channel = self._open_channel(command)
            try:
                self._copy(channel, token, result, extra_sink)
                if result.finish_reason == "eof" and channel.exit_status_ready():
                    result.exit_status = channel.recv_exit_status()
            finally:
                channel.close()

            try:
                self.log_handle.flush()
            except Exception as exc:
                log_error(f"{self.title}: transcript flush failed: {exc}")
        except ExecutionError as exc:
            result.finish_reason = "failed"
            result.error = str(exc)
            raise
        finally:
            result.finished_at = time.time()
            self.last_result = result
            self.current_command = ""
            self._log_session({"event": "run_finished", **result.to_dict()})
            self._release_slot(token)
        return result

    def run_capture(self, command: str) -> str:
        buffer = io.BytesIO()
        self.run(command, buffer)
        return buffer.getvalue().decode("utf-8", errors="replace")

    def run_regex(self, command: str, pattern: str) -> List[List[str]]:
        re.compile(pattern)
        return find_matches(self.run_capture(command), pattern)

    def run_stream(self, command: str) -> OutputStream:
        stream = OutputStream()

        def _worker():
            try:
                stream.finish(result=self.run(command, stream))
            except Exception as exc:
                stream.finish(error=exc)

        threading.Thread(target=_worker, name=f"stream-{self.title}", daemon=True).start()
        return stream

    def cancel(self) -> bool:
        """Stop the in-flight command, if any, and wait until its slot is free."""
        with self.cond:
            token = self.active_token
            if token is None:
                return False
            token.cancel()
            if self.run_thread == threading.get_ident():
                return True
            while self.active_token is token:
                self.cond.wait()
        self._log_session({"event": "cancelled"})
        return True

    def close(self) -> None:
        with self.cond:
            if self.closed:
                return
            self.closed = True
            self.cond.notify_all()

        self.cancel()

        if self.leaf_key is not None:
            try:
                self.connections.release(self.leaf_key)
            except Exception as exc:
                log_error(f"{self.title}: releasing connection failed: {exc}")
        self.client = None
        self.leaf_key = None

        try:
            self.log_handle.close()
        except Exception as exc:
            log_error(f"{self.title}: closing transcript failed: {exc}")
        self._log_session({"event": "session_closed"})

    def info(self) -> Dict[str, Any]:
        with self.cond:
            busy = self.busy
            closed = self.closed
        last = self.last_result
        return {
            "title": self.title,
            "chain": self.chain,
            "status": "closed" if closed else ("busy" if busy else "idle"),
            "current_command": self.current_command,
            "run_count": self.run_count,
            "last_result": last.to_dict() if last else None,
            "created_at": self.created_at.isoformat(),
            "log_path": self.log_path,
            "connect_error": self.connect_error,
        }
