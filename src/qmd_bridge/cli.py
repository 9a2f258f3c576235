"""Operator command line: ``qmd-bridge <command>``.

Every command reads and writes the same config file the server uses, so tenant
and token changes apply to a running server without a restart. Periodic and
watch jobs use an edited path or collection on their next run and stop for a
removed tenant; a newly added tenant is only scheduled after a restart. Server
and indexing settings are read by the server at startup; change them, then run
``qmd-bridge restart``.
"""

from __future__ import annotations

import argparse
import asyncio
from collections.abc import Callable, Sequence
import sys
import time

from .config import BridgeConfig, Settings
from .constants import INDEXING_STRATEGIES, QMD_INSTALL_HINT, VERSION
from .errors import BridgeError
from .indexing import IndexingManager
from .observability.logging import daily_log_path
from .qmd_check import check_qmd_installed
from .runtime import daemon
from .tenants import TenantRegistry


QMD_FREE_COMMANDS = frozenset({"config", "configure", "logs"})
_LOG_FOLLOW_POLL_S = 0.3

Handler = Callable[[argparse.Namespace, Settings], int]


def build_argument_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="qmd-bridge",
        description="Tenant-scoped HTTP/MCP gateway that lets containers search a host qmd install.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {VERSION}")
    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    p = sub.add_parser("serve", help="Run the server in the foreground")
    p.set_defaults(handler=_cmd_serve)

    p = sub.add_parser("start", help="Start the server as a background daemon")
    _add_server_overrides(p)
    p.set_defaults(handler=_cmd_start)

    p = sub.add_parser("stop", help="Stop the background daemon")
    p.set_defaults(handler=_cmd_stop)

    p = sub.add_parser("restart", help="Stop (if running) and start the background daemon")
    _add_server_overrides(p)
    p.set_defaults(handler=_cmd_restart)

    p = sub.add_parser("status", help="Show whether the daemon is running")
    p.set_defaults(handler=_cmd_status)

    p = sub.add_parser("list", help="List tenants")
    p.set_defaults(handler=_cmd_list)

    p = sub.add_parser("add", help="Add a tenant and print its token")
    p.add_argument("label", help="Unique tenant label")
    p.add_argument("--path", required=True, help="Absolute host directory with the tenant's documents")
    p.add_argument("--display-name", help="Human-readable name (default: label)")
    p.add_argument("--collection", help="qmd collection name (default: label)")
    p.add_argument("--index", action="store_true", help="Build the collection index right away")
    p.set_defaults(handler=_cmd_add)

    p = sub.add_parser("rm", help="Remove a tenant")
    p.add_argument("label")
    p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    p.set_defaults(handler=_cmd_rm)

    p = sub.add_parser("edit", help="Change tenant fields")
    p.add_argument("label")
    p.add_argument("--label", dest="new_label", help="New label")
    p.add_argument("--display-name")
    p.add_argument("--path")
    p.add_argument("--collection")
    p.set_defaults(handler=_cmd_edit)

    token = sub.add_parser("token", help="Show or rotate tenant tokens")
    token_sub = token.add_subparsers(dest="token_command", metavar="ACTION", required=True)
    p = token_sub.add_parser("show", help="Print the tenant token")
    p.add_argument("label")
    p.set_defaults(handler=_cmd_token_show)
    p = token_sub.add_parser("rotate", help="Replace the tenant token; the old one stops working")
    p.add_argument("label")
    p.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")
    p.set_defaults(handler=_cmd_token_rotate)

    p = sub.add_parser("config", help="Show the config file path and current settings")
    p.set_defaults(handler=_cmd_config)

    configure = sub.add_parser("configure", help="Change server, indexing or qmd path settings")
    configure_sub = configure.add_subparsers(dest="section", metavar="SECTION", required=True)
    p = configure_sub.add_parser("server", help="Port, host, timeout and concurrency limits")
    _add_server_overrides(p)
    p.add_argument("--execution-timeout-ms", type=int, help="Per-query qmd timeout in milliseconds")
    p.add_argument("--max-output-bytes", type=int, help="Largest accepted qmd stdout in bytes")
    p.set_defaults(handler=_cmd_configure_server)
    p = configure_sub.add_parser("indexing", help="Background indexing strategy")
    p.add_argument("--strategy", choices=INDEXING_STRATEGIES)
    p.add_argument("--periodic-interval", type=float, help="Seconds between periodic runs")
    p.add_argument("--watch-debounce", type=float, help="Quiet seconds after the last change in watch mode")
    p.add_argument("--index-timeout-ms", type=int, help="Timeout for collection add / embed")
    p.set_defaults(handler=_cmd_configure_indexing)
    p = configure_sub.add_parser("qmd-path", help="Location of the qmd executable")
    p.add_argument("qmd_path", help="Executable path; empty string uses qmd from $PATH")
    p.set_defaults(handler=_cmd_configure_qmd_path)

    p = sub.add_parser("logs", help="Print today's server log")
    p.add_argument("-f", "--follow", action="store_true", help="Keep printing new lines")
    p.set_defaults(handler=_cmd_logs)

    return parser


def _add_server_overrides(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("-p", "--port", type=int, help="Port to listen on")
    parser.add_argument("--host", help="Address to bind")
    parser.add_argument("--max-concurrent", type=int, help="Max concurrent qmd executions (0 = unlimited)")


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_argument_parser()
    args = parser.parse_args(argv)
    handler: Handler | None = getattr(args, "handler", None)
    if handler is None:
        parser.print_help()
        return 1

    settings = Settings()
    try:
        if args.command not in QMD_FREE_COMMANDS and not _ensure_qmd(settings):
            return 1
        return handler(args, settings)
    except BridgeError as exc:
        _err(f"Error: {exc}")
        return 1


def _ensure_qmd(settings: Settings) -> bool:
    qmd_path = BridgeConfig(settings.open_store()).qmd_path()
    if check_qmd_installed(qmd_path).installed:
        return True
    _err(f"qmd was not found (looked for {qmd_path!r}).")
    _err(f"Install it with `{QMD_INSTALL_HINT}` or run `qmd-bridge configure qmd-path <path>`.")
    return False


def _out(message: str = "") -> None:
    print(message)


def _err(message: str) -> None:
    print(message, file=sys.stderr)


def _confirm(prompt: str, assume_yes: bool) -> bool:
    if assume_yes:
        return True
    try:
        answer = input(f"{prompt} [y/N] ")
    except EOFError:
        return False
    return answer.strip().lower() in {"y", "yes"}


def _registry(settings: Settings) -> TenantRegistry:
    return TenantRegistry(settings.open_store())


# Server lifecycle


def _cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    daemon.serve(settings)
    return 0


def _cmd_start(args: argparse.Namespace, settings: Settings) -> int:
    if args.host == "0.0.0.0":
        _err("Warning: binding to 0.0.0.0 exposes the server to all network interfaces!")
    pid = daemon.start_daemon(
        settings,
        port=args.port,
        host=args.host,
        max_concurrent=args.max_concurrent,
    )
    server = BridgeConfig(settings.open_store()).server()
    _out(f"qmd-bridge server started (PID: {pid})")
    _out(f"  Listening on http://{server.host}:{server.port}")
    return 0


def _cmd_stop(args: argparse.Namespace, settings: Settings) -> int:
    daemon.stop_daemon(settings.pid_file)
    _out("qmd-bridge server stopped.")
    return 0


def _cmd_restart(args: argparse.Namespace, settings: Settings) -> int:
    if daemon.daemon_status(settings.pid_file).running:
        daemon.stop_daemon(settings.pid_file)
    return _cmd_start(args, settings)


def _cmd_status(args: argparse.Namespace, settings: Settings) -> int:
    status = daemon.daemon_status(settings.pid_file)
    if not status.running:
        _out("qmd-bridge is not running")
        return 0
    server = BridgeConfig(settings.open_store()).server()
    _out("qmd-bridge is running")
    _out(f"  PID:  {status.pid}")
    _out(f"  URL:  http://{server.host}:{server.port}")
    return 0


# Tenants


def _cmd_list(args: argparse.Namespace, settings: Settings) -> int:
    tenants = _registry(settings).list()
    if not tenants:
        _out("No tenants configured. Use `qmd-bridge add` to add one.")
        return 0

    header = ("LABEL", "DISPLAY NAME", "COLLECTION", "PATH", "CREATED")
    rows = [(t.label, t.display_name, t.collection, t.path, t.created_at[:10]) for t in tenants]
    widths = [max(len(row[i]) for row in (header, *rows)) for i in range(len(header))]
    for row in (header, *rows):
        _out("  ".join(cell.ljust(width) for cell, width in zip(row, widths)).rstrip())
    return 0


def _cmd_add(args: argparse.Namespace, settings: Settings) -> int:
    store = settings.open_store()
    registry = TenantRegistry(store)
    tenant, token = registry.add(
        args.label,
        args.display_name or args.label,
        args.path,
        collection=args.collection,
    )
    _out(f'Tenant "{tenant.label}" added.')
    _out(f"  Token:      {token}")
    _out(f"  Collection: {tenant.collection}")
    _out("  Save this token; requests must send it as `Authorization: Bearer <token>`.")

    if args.index:
        _out(f"Indexing collection {tenant.collection}...")
        manager = IndexingManager(BridgeConfig(store))
        if asyncio.run(manager.run_index(tenant)):
            _out("Collection indexed.")
        else:
            _err("Warning: index build failed; run `POST /index` or rerun later. See the log for details.")
    return 0


def _cmd_rm(args: argparse.Namespace, settings: Settings) -> int:
    registry = _registry(settings)
    tenant = registry.get(args.label)
    if tenant is None:
        _err(f'Error: Tenant "{args.label}" not found.')
        return 1
    if not _confirm(f'Remove tenant "{tenant.label}" ({tenant.display_name})? This cannot be undone.', args.yes):
        _out("Cancelled.")
        return 0
    registry.remove(tenant.label)
    _out(f'Tenant "{tenant.label}" removed.')
    return 0


def _cmd_edit(args: argparse.Namespace, settings: Settings) -> int:
    registry = _registry(settings)
    current = registry.get(args.label)
    if current is None:
        _err(f'Error: Tenant "{args.label}" not found.')
        return 1

    changes = {
        "new_label": args.new_label if args.new_label != current.label else None,
        "display_name": args.display_name if args.display_name != current.display_name else None,
        "path": args.path if args.path != current.path else None,
        "collection": args.collection if args.collection != current.collection else None,
    }
    if not any(changes.values()):
        _out("No changes made.")
        return 0

    updated = registry.edit(current.label, **changes)
    _out(f'Tenant "{updated.label}" updated.')
    return 0


def _cmd_token_show(args: argparse.Namespace, settings: Settings) -> int:
    tenant = _registry(settings).get(args.label)
    if tenant is None:
        _err(f'Error: Tenant "{args.label}" not found.')
        return 1
    _out(tenant.token)
    return 0


def _cmd_token_rotate(args: argparse.Namespace, settings: Settings) -> int:
    registry = _registry(settings)
    if registry.get(args.label) is None:
        _err(f'Error: Tenant "{args.label}" not found.')
        return 1
    if not _confirm(f'Rotate token for "{args.label}"? The old token stops working immediately.', args.yes):
        _out("Cancelled.")
        return 0
    token = registry.rotate_token(args.label)
    _out("Token rotated.")
    _out(f"  New token: {token}")
    return 0


# Settings


def _cmd_config(args: argparse.Namespace, settings: Settings) -> int:
    config = BridgeConfig(settings.open_store())
    server = config.server()
    indexing = config.indexing()
    qmd_path = config.store.get("qmd_path") or "(qmd from $PATH)"

    _out(f"Config file: {config.path}")
    _out()
    rows = [
        ("Port", server.port),
        ("Host", server.host),
        ("Execution timeout", f"{server.execution_timeout_ms}ms"),
        ("Max concurrent", server.max_concurrent or "Unlimited"),
        ("Max output", f"{server.max_output_bytes} bytes"),
        ("qmd path", qmd_path),
        ("Indexing strategy", indexing.strategy),
        ("Periodic interval", f"{indexing.periodic_interval:g}s"),
        ("Watch debounce", f"{indexing.watch_debounce:g}s"),
        ("Index timeout", f"{indexing.index_timeout_ms}ms"),
    ]
    width = max(len(name) for name, _ in rows)
    for name, value in rows:
        _out(f"  {name.ljust(width)}  {value}")
    return 0


def _cmd_configure_server(args: argparse.Namespace, settings: Settings) -> int:
    if args.host == "0.0.0.0":
        _err("Warning: binding to 0.0.0.0 exposes the server to all network interfaces!")
    BridgeConfig(settings.open_store()).save_server(
        port=args.port,
        host=args.host,
        max_concurrent=args.max_concurrent,
        execution_timeout_ms=args.execution_timeout_ms,
        max_output_bytes=args.max_output_bytes,
    )
    _out("Server settings saved. Restart qmd-bridge to apply changes.")
    return 0


def _cmd_configure_indexing(args: argparse.Namespace, settings: Settings) -> int:
    saved = BridgeConfig(settings.open_store()).save_indexing(
        strategy=args.strategy,
        periodic_interval=args.periodic_interval,
        watch_debounce=args.watch_debounce,
        index_timeout_ms=args.index_timeout_ms,
    )
    _out(f"Indexing strategy saved ({saved.strategy}).")
    if saved.strategy != "manual":
        _out("Restart qmd-bridge to apply changes.")
    return 0


def _cmd_configure_qmd_path(args: argparse.Namespace, settings: Settings) -> int:
    BridgeConfig(settings.open_store()).save_qmd_path(args.qmd_path)
    _out("qmd path saved." if args.qmd_path.strip() else "qmd path cleared; using qmd from $PATH.")
    return 0


def _cmd_logs(args: argparse.Namespace, settings: Settings) -> int:
    log_path = daily_log_path(settings.log_dir)
    if not log_path.exists():
        _out("No log file found for today. Is the server running?")
        return 0

    with open(log_path, encoding="utf-8", errors="replace") as handle:
        content = handle.read()
        sys.stdout.write(content)
        if not args.follow:
            if not content:
                _out("Log file is empty.")
            return 0

        _out("--- Following logs (Ctrl+C to exit) ---")
        try:
            while True:
                chunk = handle.read()
                if chunk:
                    sys.stdout.write(chunk)
                    sys.stdout.flush()
                else:
                    time.sleep(_LOG_FOLLOW_POLL_S)
        except KeyboardInterrupt:
            return 0
