"""Foreground server entry point and PID-file based background daemon control."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
import logging
import os
from pathlib import Path
import signal
import subprocess
import sys
import time
from typing import Any

from ..config import BridgeConfig, Settings
from ..constants import DAEMON_STOP_POLL_S, DAEMON_STOP_TIMEOUT_S, VERSION
from ..errors import DaemonError
from ..observability.logging import configure_logging, daily_log_path


logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class DaemonStatus:
    running: bool
    pid: int | None = None


def read_pid(pid_file: Path) -> int | None:
    try:
        raw = pid_file.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def is_process_running(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists but owned by someone else.
        return True
    return True


def daemon_status(pid_file: Path) -> DaemonStatus:
    pid = read_pid(pid_file)
    if pid is None or not is_process_running(pid):
        return DaemonStatus(running=False)
    return DaemonStatus(running=True, pid=pid)


def start_daemon(
    settings: Settings,
    *,
    port: int | None = None,
    host: str | None = None,
    max_concurrent: int | None = None,
    spawn: Callable[..., Any] = subprocess.Popen,
) -> int:
    """Spawn ``python -m qmd_bridge serve`` detached and return its PID.

    Overrides are persisted to the ``server`` settings first so the child and
    later restarts pick them up.
    """
    status = daemon_status(settings.pid_file)
    if status.running:
        raise DaemonError(f"Server is already running (PID: {status.pid})")

    store = settings.open_store()
    if port is not None or host is not None or max_concurrent is not None:
        BridgeConfig(store).save_server(port=port, host=host, max_concurrent=max_concurrent)

    settings.log_dir.mkdir(parents=True, exist_ok=True)
    log_path = daily_log_path(settings.log_dir)
    env = {**os.environ, "QMD_BRIDGE_CONFIG_DIR": str(settings.config_dir)}

    with open(log_path, "ab") as log_file:
        process = spawn(
            [sys.executable, "-m", "qmd_bridge", "serve"],
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            env=env,
            start_new_session=True,
        )

    logger.info("qmd-bridge daemon spawned (pid=%d, log=%s)", process.pid, log_path)
    return process.pid


def stop_daemon(pid_file: Path, *, timeout_s: float = DAEMON_STOP_TIMEOUT_S) -> int:
    """Send SIGTERM to the daemon, wait up to ``timeout_s`` and remove its PID file."""
    pid = read_pid(pid_file)
    if pid is None:
        raise DaemonError("No PID file found. Server may not be running.")

    if not is_process_running(pid):
        pid_file.unlink(missing_ok=True)
        raise DaemonError("Server process not found. Cleaned up stale PID file.")

    try:
        os.kill(pid, signal.SIGTERM)
    except OSError as exc:
        raise DaemonError(f"Failed to stop server: {exc}") from exc

    deadline = time.monotonic() + timeout_s
    while is_process_running(pid) and time.monotonic() < deadline:
        time.sleep(DAEMON_STOP_POLL_S)

    if is_process_running(pid):
        logger.warning("qmd-bridge (pid=%d) still running %.1fs after SIGTERM", pid, timeout_s)

    pid_file.unlink(missing_ok=True)
    return pid


@contextmanager
def pid_file_guard(pid_file: Path) -> Iterator[None]:
    """Write this process's PID for the duration of the block."""
    pid_file.parent.mkdir(parents=True, exist_ok=True)
    pid_file.write_text(str(os.getpid()), encoding="utf-8")
    try:
        yield
    finally:
        if read_pid(pid_file) == os.getpid():
            pid_file.unlink(missing_ok=True)


def serve(settings: Settings) -> None:
    """Run the server in the foreground until SIGINT/SIGTERM."""
    import uvicorn

    from ..app_builder import create_app
    from ..services import BridgeServices

    configure_logging(
        settings.log_level,
        settings.log_json,
        log_dir=settings.log_dir if settings.log_to_file else None,
    )

    services = BridgeServices.from_settings(settings)
    server = services.config.server()
    app = create_app(services)

    if server.host == "0.0.0.0":
        logger.warning("Binding to 0.0.0.0 exposes the server to all network interfaces")

    logger.info("Starting qmd-bridge %s on %s:%d", VERSION, server.host, server.port)
    logger.info("Config: %s (%d tenants)", services.config.path, len(services.registry))

    with pid_file_guard(settings.pid_file):
        uvicorn.run(
            app,
            host=server.host,
            port=server.port,
            log_level=settings.log_level.lower(),
            log_config=None,
        )
