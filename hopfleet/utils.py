import os
import re
import sys
import json
import traceback
from datetime import datetime
from typing import Any, Dict, Optional
from hopfleet.config import ANSI_ESCAPE, CONTROL_CHARS, config

def log_error(message: str) -> None:
    print(f"[hopfleet] {message}", file=sys.stderr, flush=True)

def clamp_int(value: Any, default: int, min_value: int, max_value: int) -> int:
    try:
        numeric = int(value)
    except Exception:
        numeric = default
    if numeric < min_value:
        return min_value
    if numeric > max_value:
        return max_value
    return numeric

def to_bool(value: Any, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).lower().strip()
    if s in ("true", "1", "yes", "on"):
        return True
    if s in ("false", "0", "no", "off"):
        return False
    return default

def iso_now() -> str:
    return datetime.now().isoformat(timespec="milliseconds")

def log_file_name(title: str) -> str:
    """Transcript file name for a host title; path separators become '_'."""
    name = title.replace("/", "_")
    if os.sep != "/":
        name = name.replace(os.sep, "_")
    if os.altsep:
        name = name.replace(os.altsep, "_")
    return f"{name}.log"

def strip_control(text: str) -> str:
    if not text:
        return ""
    text = ANSI_ESCAPE.sub("", text)
    text = CONTROL_CHARS.sub("", text)
    return text.replace("\r\n", "\n").replace("\r", "\n")

def json_line(path: str, payload: Dict[str, Any]) -> None:
    try:
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(json.dumps(payload, ensure_ascii=False) + "\n")
    except Exception as exc:
        log_error(f"log write failed ({path}): {exc}")

def log_event(source: str, payload: Dict[str, Any], path: Optional[str] = None) -> None:
    target = path or config.EVENT_LOG
    if not target:
        return
    data = {"ts": iso_now(), "source": source}
    data.update(payload)
    json_line(target, data)

def report_internal_error(where: str, exc: BaseException) -> None:
    """Surface an unexpected failure loudly without taking the process down."""
    stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
    log_error(f"!!INTERNAL ERROR!! in {where}: {exc}\n{stack}")
    log_event("internal", {"event": "internal_error", "where": where, "error": str(exc), "traceback": stack})

def find_matches(text: str, pattern: str) -> list:
    """All matches of pattern as [full, group1, ...] lists."""
    compiled = re.compile(pattern)
    return [[m.group(0), *m.groups()] for m in compiled.finditer(text)]

def apply_text_filters(
    text: str,
    contains: Optional[str] = None,
    regex: Optional[str] = None,
    tail_lines: Optional[int] = None,
) -> Dict[str, Any]:
    raw = text or ""
    lines = raw.splitlines()
    filtered = False
    if contains:
        lines = [line for line in lines if contains in line]
        filtered = True
    if regex:
        try:
            compiled = re.compile(regex)
        except re.error as exc:
            return {"success": False, "error": f"invalid regex: {exc}", "filtered": False, "output": ""}
        lines = [line for line in lines if compiled.search(line)]
        filtered = True
    if tail_lines is not None:
        tail = clamp_int(tail_lines, 100, 1, 5000)
        lines = lines[-tail:]
        filtered = True
    return {
        "success": True,
        "filtered": filtered,
        "matched_lines": len(lines),
        "output": "\n".join(lines),
    }
