import sys
import os
import io
import json
import argparse
from hopfleet.config import HOST_KEY_POLICIES, config
from hopfleet.utils import log_error, report_internal_error
from hopfleet.server import handle_request

registry = None
_stdout = None


def _write_response(response: dict) -> None:
    """Write JSON-RPC response to stdout as UTF-8."""
    try:
        _stdout.write(json.dumps(response, ensure_ascii=False) + "\n")
        _stdout.flush()
    except Exception as exc:
        log_error(f"response write error: {exc}")
        try:
            _stdout.write(json.dumps(response, ensure_ascii=True) + "\n")
            _stdout.flush()
        except Exception as exc2:
            log_error(f"response write fallback error: {exc2}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="hopfleet: run commands across hosts behind jump-host chains (JSON-RPC over stdio)"
    )
    parser.add_argument("--user", help="Default SSH user for hops without user@ (overrides HOPFLEET_USER env)")
    parser.add_argument("--ssh-dir", help="Directory holding id_* private keys (overrides HOPFLEET_SSH_DIR env)")
    parser.add_argument("--known-hosts", help="known_hosts file (default: <ssh-dir>/known_hosts)")
    parser.add_argument(
        "--host-key-policy",
        choices=HOST_KEY_POLICIES,
        help="known_hosts rejects unknown keys, warn accepts and reports, accept accepts silently",
    )
    parser.add_argument("--log-dir", help="Directory for per-host transcripts (overrides HOPFLEET_LOG_DIR env)")
    parser.add_argument("--event-log", help="JSON lines event journal (overrides HOPFLEET_EVENT_LOG env)")
    parser.add_argument("--connect-timeout", type=float, help="Per-hop dial/handshake timeout in seconds")
    parser.add_argument("--rows", type=int, help="Console rows used for pane geometry")
    parser.add_argument("--cols", type=int, help="Console columns used for pane geometry")
    parser.add_argument("--host", action="append", default=[], metavar="CHAIN[=TITLE]",
                        help="Host to add at startup; may be repeated")
    return parser


def _add_startup_hosts(entries) -> None:
    for entry in entries:
        chain, _, title = entry.partition("=")
        try:
            registry.add_host(chain, title or None)
            log_error(f"added {title or chain}")
        except Exception as exc:
            log_error(f"cannot add {entry}: {exc}")


def main() -> None:
    global registry, _stdout
    from hopfleet.chain import ConnectionManager, ParamikoDialer
    from hopfleet.registry import HostRegistry
    from hopfleet.view import ConsoleLayout

    stdin = io.TextIOWrapper(sys.stdin.buffer, encoding="utf-8", errors="replace")
    _stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", line_buffering=True)

    parser = build_parser()
    args = parser.parse_args()

    try:
        config.load_from_env()
    except ValueError as exc:
        parser.error(f"invalid environment: {exc}")

    if args.user: config.USER = args.user
    if args.ssh_dir: config.SSH_DIR = args.ssh_dir
    if args.known_hosts: config.KNOWN_HOSTS = args.known_hosts
    if args.host_key_policy: config.set_host_key_policy(args.host_key_policy)
    if args.log_dir: config.LOG_DIR = args.log_dir
    if args.event_log: config.EVENT_LOG = args.event_log
    if args.connect_timeout: config.CONNECT_TIMEOUT = args.connect_timeout
    if args.rows: config.CONSOLE_ROWS = args.rows
    if args.cols: config.CONSOLE_COLS = args.cols

    if not os.path.isdir(config.LOG_DIR):
        parser.error(f"log dir does not exist: {config.LOG_DIR}")

    connections = ConnectionManager(ParamikoDialer())
    registry = HostRegistry(connections, ConsoleLayout(), log_dir=config.LOG_DIR)

    log_error(
        f"hopfleet started. user={config.USER} log_dir={config.LOG_DIR} "
        f"host_key_policy={config.HOST_KEY_POLICY}"
    )
    _add_startup_hosts(args.host)

    for line in stdin:
        line = line.strip()
        if not line:
            continue
        try:
            request = json.loads(line)
        except json.JSONDecodeError as exc:
            log_error(f"invalid json: {exc}")
            continue
        try:
            response = handle_request(request, registry)
            if response is not None:
                _write_response(response)
        except Exception as exc:
            report_internal_error("request loop", exc)
            _write_response({
                "jsonrpc": "2.0",
                "id": request.get("id") if isinstance(request, dict) else None,
                "error": {"code": -32603, "message": f"Internal error: {exc}"},
            })

    log_error("shutting down...")
    registry.close_all()
    connections.close_all()

if __name__ == "__main__":
    main()
