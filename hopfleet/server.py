import re
import json
from typing import Any, Dict, List, Optional
from hopfleet.config import DEFAULT_READ_MAX_CHARS, MAX_READ_MAX_CHARS
from hopfleet.errors import HopfleetError
from hopfleet.utils import (
    apply_text_filters, clamp_int, log_error, report_internal_error, strip_control, to_bool
)

def format_tool_result(result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    text = json.dumps(result, ensure_ascii=False, separators=(",", ":"))
    if not is_error:
        return {"content": [{"type": "text", "text": text}]}
    return {"content": [{"type": "text", "text": text}], "isError": True}

def make_response(req_id: Any, result: Dict[str, Any], is_error: bool = False) -> Dict[str, Any]:
    return {"jsonrpc": "2.0", "id": req_id, "result": format_tool_result(result, is_error)}

def tools_list() -> Dict[str, Any]:
    hosts_param = {
        "type": "array",
        "items": {"type": "string"},
        "description": "Optional host titles. If omitted, every registered host is used.",
    }
    tools = [
        {
            "name": "host_add",
            "description": (
                "Connect a host through a jump chain and give it a pane. "
                "Chain is hop1[:port]/hop2[:port]/..., each hop optionally user@host."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "chain": {"type": "string", "description": "Jump chain, e.g. bastion/core-gw:2222/db01."},
                    "title": {"type": "string", "description": "Optional unique title. Defaults to the chain."},
                },
                "required": ["chain"],
            },
        },
        {
            "name": "host_remove",
            "description": "Cancel, close and remove a host by title.",
            "inputSchema": {
                "type": "object",
                "properties": {"title": {"type": "string", "description": "Host title."}},
                "required": ["title"],
            },
        },
        {
            "name": "host_list",
            "description": "List hosts with status (idle|busy) and their last run outcome.",
            "inputSchema": {"type": "object", "properties": {}},
        },
        {
            "name": "run",
            "description": (
                "Run a command on hosts in parallel. Output streams into each host pane and transcript. "
                "With wait=false the call returns at once; poll with read."
            ),
            "inputSchema": {
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "Command line to execute."},
                    "hosts": hosts_param,
                    "wait": {"type": "boolean", "description": "Optional. Block until every host finished (default true)."},
                },
                "required": ["command"],
            },
        },
        {
            "name": "cancel",
            "description": "Stop streaming the running command on hosts. The remote process is not killed.",
            "inputSchema": {"type": "object", "properties": {"hosts": hosts_param}},
        },
        {
            "name": "read",
            "description": "Read a host pane. Without offset, continues from the last read.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Host title."},
                    "offset": {"type": "number", "description": "Optional byte offset."},
                    "max_chars": {"type": "number", "description": "Optional. Max bytes to return."},
                    "raw": {"type": "boolean", "description": "Optional. Keep escape sequences."},
                    "contains": {"type": "string", "description": "Optional line filter."},
                    "regex": {"type": "string", "description": "Optional line regex filter."},
                    "tail_lines": {"type": "number", "description": "Optional. Keep only the last N lines."},
                },
                "required": ["title"],
            },
        },
        {
            "name": "capture",
            "description": "Run a command on one host and return its output (or regex matches) as text.",
            "inputSchema": {
                "type": "object",
                "properties": {
                    "title": {"type": "string", "description": "Host title."},
                    "command": {"type": "string", "description": "Command line to execute."},
                    "regex": {"type": "string", "description": "Optional. Return all matches with groups."},
                    "raw": {"type": "boolean", "description": "Optional. Keep escape sequences."},
                },
                "required": ["title", "command"],
            },
        },
        {
            "name": "connections",
            "description": "List cached hop prefixes.",
            "inputSchema": {"type": "object", "properties": {}},
        },
    ]
    return {"jsonrpc": "2.0", "id": 1, "result": {"tools": tools}}

def _hosts_arg(args: Dict[str, Any]) -> Optional[List[str]]:
    hosts = args.get("hosts")
    if hosts is None:
        return None
    if isinstance(hosts, str):
        return [hosts]
    return [str(h) for h in hosts]

def host_add_dispatch(args: Dict[str, Any], registry) -> Dict[str, Any]:
    chain = (args.get("chain") or "").strip()
    title = (args.get("title") or "").strip() or None
    session = registry.add_host(chain, title)
    return {"success": True, "message": f"host {session.title} added", "host": session.info()}

def host_remove_dispatch(args: Dict[str, Any], registry) -> Dict[str, Any]:
    title = args.get("title") or ""
    removed = registry.remove_host(title)
    message = f"host {title} removed" if removed else f"host {title} not present"
    return {"success": True, "removed": removed, "message": message}

def host_list_dispatch(args: Dict[str, Any], registry) -> Dict[str, Any]:
    rows = []
    for session in registry.list_hosts():
        row = session.info()
        outcome = registry.outcome(session.title)
        if outcome:
            row["last_outcome"] = {k: v for k, v in outcome.items() if k != "output"}
        rows.append(row)
    return {"success": True, "hosts": rows, "total": len(rows)}

def run_dispatch(args: Dict[str, Any], registry) -> Dict[str, Any]:
    command = args.get("command", "")
    if not command or not str(command).strip():
        return {"success": False, "error": "command is required"}
    hosts = _hosts_arg(args)
    if not to_bool(args.get("wait", True), True):
        threads = registry.start_all(command, hosts)
        return {"success": True, "status": "started", "hosts": sorted(threads)}
    outcomes = registry.run_all(command, hosts)
    failed = sorted(title for title, outcome in outcomes.items() if not outcome.get("success"))
    return {
        "success": True,
        "status": "failed" if failed and len(failed) == len(outcomes) else "completed",
        "results": outcomes,
        "failed_hosts": failed,
    }

def cancel_dispatch(args: Dict[str, Any], registry) -> Dict[str, Any]:
    cancelled = registry.cancel_all(_hosts_arg(args))
    return {"success": True, "cancelled": cancelled}

def read_dispatch(args: Dict[str, Any], registry) -> Dict[str, Any]:
    title = args.get("title") or ""
    pane = registry.layout.pane(title)
    if pane is None:
        return {"success": False, "error": f"host {title} not found"}

    offset = args.get("offset")
    if offset is not None:
        try:
            offset = int(offset)
        except (TypeError, ValueError):
            return {"success": False, "error": "offset must be number"}
    max_chars = clamp_int(args.get("max_chars", DEFAULT_READ_MAX_CHARS), DEFAULT_READ_MAX_CHARS, 1, MAX_READ_MAX_CHARS)
    result = pane.read(offset, max_chars, clean=not to_bool(args.get("raw", False)))

    filtered = apply_text_filters(
        result["output"],
        contains=args.get("contains"),
        regex=args.get("regex"),
        tail_lines=args.get("tail_lines"),
    )
    if not filtered.get("success"):
        return {"success": False, "error": filtered.get("error", "filtering error")}
    if filtered["filtered"]:
        result["output"] = filtered["output"]
        result["matched_lines"] = filtered["matched_lines"]
    result["success"] = True
    return result

def capture_dispatch(args: Dict[str, Any], registry) -> Dict[str, Any]:
    title = args.get("title") or ""
    command = args.get("command") or ""
    session = registry.get_host(title)
    if session is None:
        return {"success": False, "error": f"host {title} not found"}

    regex = args.get("regex")
    if regex:
        try:
            matches = session.run_regex(command, regex)
        except re.error as exc:
            return {"success": False, "error": f"invalid regex: {exc}"}
        return {"success": True, "title": title, "matches": matches, "result": session.last_result.to_dict()}

    output = session.run_capture(command)
    if not to_bool(args.get("raw", False)):
        output = strip_control(output)
    return {"success": True, "title": title, "output": output, "result": session.last_result.to_dict()}

def connections_dispatch(args: Dict[str, Any], registry) -> Dict[str, Any]:
    prefixes = registry.connections.cached_prefixes()
    return {"success": True, "prefixes": prefixes, "total": len(prefixes)}

TOOLS = {
    "host_add": host_add_dispatch,
    "host_remove": host_remove_dispatch,
    "host_list": host_list_dispatch,
    "run": run_dispatch,
    "cancel": cancel_dispatch,
    "read": read_dispatch,
    "capture": capture_dispatch,
    "connections": connections_dispatch,
}

def handle_request(request: Dict[str, Any], registry) -> Optional[Dict[str, Any]]:
    method = request.get("method")
    params = request.get("params", {}) or {}
    req_id = request.get("id", 1)

    if method == "initialize":
        return {
            "jsonrpc": "2.0", "id": req_id,
            "result": {
                "protocolVersion": "2024-11-05",
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "hopfleet", "version": "0.3.0"},
            },
        }

    if method == "notifications/initialized": return None
    if method == "tools/list":
        response = tools_list()
        response["id"] = req_id
        return response

    if method == "tools/call":
        tool_name = params.get("name")
        args = params.get("arguments", {}) or {}
        dispatch = TOOLS.get(tool_name)
        if dispatch is None:
            return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown tool: {tool_name}"}}
        try:
            result = dispatch(args, registry)
        except HopfleetError as exc:
            result = {"success": False, "error": str(exc), "error_type": type(exc).__name__}
        except Exception as exc:
            report_internal_error(f"tool {tool_name}", exc)
            result = {"success": False, "error": f"internal error: {exc}"}
        is_error = not result.get("success", False) or result.get("status") == "failed"
        if is_error:
            log_error(f"tool {tool_name} failed: {result.get('error', 'see results')}")
        return make_response(req_id, result, is_error=is_error)

    return {"jsonrpc": "2.0", "id": req_id, "error": {"code": -32601, "message": f"Unknown method: {method}"}}
