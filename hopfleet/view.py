"""Headless live view: one byte buffer per host pane plus the pane layout.

Panes share the top half of the console in sorted title order, each getting an
equal slice of the width; the bottom half is left to the control area. The
geometry a pane reports is its inner size (border excluded) and is what a
session uses to size its remote pty.
"""
import threading
import time
from typing import Any, Dict, List, Optional, Tuple

from hopfleet.config import MAX_PANE_BUFFER_BYTES, config
from hopfleet.utils import strip_control

BORDER = 1


class PaneView:
    def __init__(self, title: str, layout: "ConsoleLayout", max_bytes: int = MAX_PANE_BUFFER_BYTES):
        self.title = title
        self.layout = layout
        self.max_bytes = max_bytes

        self.lock = threading.Lock()
        self.buffer = bytearray()
        self.base_offset = 0
        self.shared_cursor = 0
        self.total_received = 0
        self.last_data_at: Optional[float] = None

    def write(self, data: bytes) -> int:
        if not data:
            return 0
        with self.lock:
            self.buffer += data
            self.total_received += len(data)
            self.last_data_at = time.time()

            overflow = len(self.buffer) - self.max_bytes
            if overflow > 0:
                del self.buffer[:overflow]
                self.base_offset += overflow
                if self.shared_cursor < self.base_offset:
                    self.shared_cursor = self.base_offset
        return len(data)

    def geometry(self) -> Optional[Tuple[int, int]]:
        return self.layout.geometry(self.title)

    def snapshot(self) -> bytes:
        with self.lock:
            return bytes(self.buffer)

    def read(self, offset: Optional[int], max_chars: int, clean: bool = True) -> Dict[str, Any]:
        with self.lock:
            use_shared_cursor = offset is None
            if offset is None:
                offset = self.shared_cursor

            dropped_data = False
            if offset < self.base_offset:
                offset = self.base_offset
                dropped_data = True

            relative = max(0, offset - self.base_offset)
            data = bytes(self.buffer[relative:relative + max_chars])
            limited = len(self.buffer) - relative > len(data)

            next_offset = offset + len(data)
            if use_shared_cursor:
                self.shared_cursor = next_offset
            total = self.total_received

        text = data.decode("utf-8", errors="replace")
        return {
            "title": self.title,
            "offset_start": offset,
            "next_offset": next_offset,
            "output": strip_control(text) if clean else text,
            "limited": limited,
            "dropped_data": dropped_data,
            "total_received_bytes": total,
        }


class ConsoleLayout:
    def __init__(self, rows: Optional[int] = None, cols: Optional[int] = None):
        self.rows = rows or config.CONSOLE_ROWS
        self.cols = cols or config.CONSOLE_COLS
        self.lock = threading.Lock()
        self.panes: Dict[str, PaneView] = {}
        self.order: List[str] = []
        self.geometries: Dict[str, Tuple[int, int]] = {}
        self.reflow_count = 0

    def open_pane(self, title: str) -> PaneView:
        pane = PaneView(title, self)
        with self.lock:
            self.panes[title] = pane
        return pane

    def close_pane(self, title: str) -> None:
        with self.lock:
            self.panes.pop(title, None)

    def pane(self, title: str) -> Optional[PaneView]:
        with self.lock:
            return self.panes.get(title)

    def geometry(self, title: str) -> Optional[Tuple[int, int]]:
        with self.lock:
            return self.geometries.get(title)

    def resize(self, rows: int, cols: int) -> None:
        with self.lock:
            self.rows = rows
            self.cols = cols
            self._place(self.order)

    def reflow(self, titles: List[str]) -> None:
        with self.lock:
            self.order = sorted(set(titles))
            self._place(self.order)
            self.reflow_count += 1

    def _place(self, order: List[str]) -> None:
        self.geometries = {}
        if not order:
            return
        height = self.rows // 2
        width = self.cols // len(order)
        for index, title in enumerate(order):
            pane_width = width
            if index == len(order) - 1:
                pane_width = self.cols - width * index
            inner = (max(1, height - 2 * BORDER), max(1, pane_width - 2 * BORDER))
            self.geometries[title] = inner
