"""Observability: structured logging, log context and Prometheus metrics."""

from qmd_bridge.observability.context import get_log_context, tenant_context
from qmd_bridge.observability.logging import JsonFormatter, configure_logging, daily_log_path
from qmd_bridge.observability.metrics import (
    ACTIVE_EXECUTIONS,
    AUTH_FAILURES,
    EXECUTION_COUNT,
    EXECUTION_LATENCY,
    INDEX_RUNS,
    get_metrics,
    get_metrics_content_type,
    track_latency,
)


__all__ = [
    "ACTIVE_EXECUTIONS",
    "AUTH_FAILURES",
    "EXECUTION_COUNT",
    "EXECUTION_LATENCY",
    "INDEX_RUNS",
    "JsonFormatter",
    "configure_logging",
    "daily_log_path",
    "get_log_context",
    "get_metrics",
    "get_metrics_content_type",
    "tenant_context",
    "track_latency",
]
