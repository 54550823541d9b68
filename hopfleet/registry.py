import threading
from typing import Any, Dict, List, Optional, Set

from hopfleet.chain import parse_chain
from hopfleet.errors import DuplicateHostError, HopfleetError, HostConnectError, UnknownHostError
from hopfleet.session import Session
from hopfleet.utils import iso_now, log_error, log_event, report_internal_error


class HostRegistry:
    """Live hosts by title; every membership change reflows the layout before the lock is dropped."""

    def __init__(self, connections: Any, layout: Any, log_dir: Optional[str] = None):
        self.connections = connections
        self.layout = layout
        self.log_dir = log_dir

        self.sessions: Dict[str, Session] = {}
        self.reserved: Set[str] = set()
        self.last_outcomes: Dict[str, Dict[str, Any]] = {}
        self.lock = threading.Lock()

    def _reflow_locked(self) -> None:
        self.layout.reflow(sorted(self.sessions))

    def add_host(self, chain: str, title: Optional[str] = None) -> Session:
        parse_chain(chain)
        title = title or chain
        with self.lock:
            if title in self.sessions or title in self.reserved:
                raise DuplicateHostError(f"host {title} already exists")
            self.reserved.add(title)

        try:
            pane = self.layout.open_pane(title)
            try:
                session = Session(title, pane, self.connections, self.log_dir)
            except OSError:
                self.layout.close_pane(title)
                raise

            if not session.connect(chain):
                error = session.connect_error
                session.close()
                self.layout.close_pane(title)
                raise HostConnectError(f"cannot add {title}: {error}")

            with self.lock:
                self.sessions[title] = session
                self._reflow_locked()
        finally:
            with self.lock:
                self.reserved.discard(title)

        log_event("registry", {"event": "host_added", "title": title, "chain": chain})
        return session

    def remove_host(self, title: str) -> bool:
        with self.lock:
            session = self.sessions.pop(title, None)
            if session is None:
                return False
            self.reserved.add(title)
            self.layout.close_pane(title)
            self._reflow_locked()

        try:
            session.close()
        finally:
            with self.lock:
                self.reserved.discard(title)
                self.last_outcomes.pop(title, None)
        log_event("registry", {"event": "host_removed", "title": title})
        return True

    def get_host(self, title: str) -> Optional[Session]:
        with self.lock:
            return self.sessions.get(title)

    def list_hosts(self) -> List[Session]:
        with self.lock:
            return [self.sessions[title] for title in sorted(self.sessions)]

    def outcome(self, title: str) -> Optional[Dict[str, Any]]:
        """Copy of the last run outcome recorded for title, if any."""
        with self.lock:
            outcome = self.last_outcomes.get(title)
            return dict(outcome) if outcome is not None else None

    def _targets(self, titles: Optional[List[str]]) -> List[Session]:
        with self.lock:
            if titles is None:
                return [self.sessions[title] for title in sorted(self.sessions)]
            missing = [title for title in titles if title not in self.sessions]
            if missing:
                raise UnknownHostError(f"unknown hosts: {', '.join(missing)}")
            return [self.sessions[title] for title in titles]

    def _run_one(self, session: Session, command: str, capture: bool,
                 results: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, Any]:
        started = iso_now()
        try:
            if capture:
                output = session.run_capture(command)
                outcome = {"success": True, "output": output}
                outcome.update(session.last_result.to_dict())
            else:
                outcome = {"success": True}
                outcome.update(session.run(command).to_dict())
        except HopfleetError as exc:
            outcome = {"success": False, "error": str(exc)}
        except Exception as exc:
            report_internal_error(f"run on {session.title}", exc)
            outcome = {"success": False, "error": f"internal error: {exc}"}
        outcome["started_at"] = started
        with self.lock:
            # a host removed mid-run keeps no outcome
            if self.sessions.get(session.title) is session:
                self.last_outcomes[session.title] = outcome
            if results is not None:
                results[session.title] = outcome
        return outcome

    def start_all(self, command: str, titles: Optional[List[str]] = None, capture: bool = False,
                  results: Optional[Dict[str, Dict[str, Any]]] = None) -> Dict[str, threading.Thread]:
        """Start command on every target host, one thread each, without waiting."""
        threads = {}
        for session in self._targets(titles):
            thread = threading.Thread(
                target=self._run_one,
                args=(session, command, capture, results),
                name=f"run-{session.title}",
                daemon=True,
            )
            threads[session.title] = thread
            thread.start()
        return threads

    def run_all(self, command: str, titles: Optional[List[str]] = None, capture: bool = False) -> Dict[str, Dict[str, Any]]:
        results: Dict[str, Dict[str, Any]] = {}
        threads = self.start_all(command, titles, capture, results)
        for thread in threads.values():
            thread.join()
        with self.lock:
            return dict(results)

    def cancel_all(self, titles: Optional[List[str]] = None) -> List[str]:
        cancelled = []
        for session in self._targets(titles):
            if session.cancel():
                cancelled.append(session.title)
        return cancelled

    def close_all(self) -> None:
        with self.lock:
            titles = sorted(self.sessions)
        for title in titles:
            try:
                self.remove_host(title)
            except Exception as exc:
                log_error(f"closing {title} failed: {exc}")
