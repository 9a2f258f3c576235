"""Defaults and fixed limits shared across the bridge."""

from __future__ import annotations

from pathlib import Path


VERSION = "1.1.0"

# qmd subcommands a tenant may run through the gateway
ALLOWED_COMMANDS: tuple[str, ...] = ("search", "vsearch", "query")

# Server defaults
DEFAULT_PORT = 3333
DEFAULT_HOST = "127.0.0.1"
DEFAULT_EXECUTION_TIMEOUT_MS = 30_000
DEFAULT_MAX_CONCURRENT = 0  # 0 = unlimited
MAX_QUERY_LENGTH = 1000
DEFAULT_MAX_OUTPUT_BYTES = 10 * 1024 * 1024

GRACEFUL_SHUTDOWN_TIMEOUT_S = 10.0

DEFAULT_CONFIG_DIR = Path.home() / ".config" / "qmd-bridge"
CONFIG_FILE_NAME = "config.json"
PID_FILE_NAME = "qmd-bridge.pid"
LOG_DIR_NAME = "logs"

TOKEN_PREFIX = "qmd_sk_"
TOKEN_BYTES = 16

# Indexing
INDEXING_STRATEGIES: tuple[str, ...] = ("manual", "periodic", "watch")
DEFAULT_INDEXING_STRATEGY = "manual"
DEFAULT_PERIODIC_INTERVAL_S = 3600
DEFAULT_WATCH_DEBOUNCE_S = 5.0
DEFAULT_INDEX_TIMEOUT_MS = 300_000
COLLECTION_LIST_TIMEOUT_MS = 10_000

QMD_VERSION_TIMEOUT_S = 5.0
QMD_INSTALL_HINT = "npm install -g @tobilu/qmd"

# Daemon
DAEMON_STOP_TIMEOUT_S = 5.0
DAEMON_STOP_POLL_S = 0.25
