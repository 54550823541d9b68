from typing import Any, Optional, Set

from hopfleet.utils import log_error


class OutputMultiplexer:
    """Fans one byte stream out to the live pane, the transcript and an optional capture.

    Bytes pass through untouched, escape sequences included. Sinks are borrowed;
    closing them is the owner's job.
    """

    def __init__(self, live: Any, log: Any, capture: Optional[Any] = None, title: str = ""):
        self.live = live
        self.log = log
        self.capture = capture
        self.title = title
        self.failed: Set[str] = set()

    def write(self, data: bytes) -> int:
        primary_error = None
        try:
            self.live.write(data)
        except Exception as exc:
            primary_error = exc

        for name, sink in (("log", self.log), ("capture", self.capture)):
            if sink is None or name in self.failed:
                continue
            try:
                sink.write(data)
            except Exception as exc:
                self.failed.add(name)
                log_error(f"{self.title}: {name} sink write failed, dropping it for this run: {exc}")

        if primary_error is not None:
            raise primary_error
        return len(data)
