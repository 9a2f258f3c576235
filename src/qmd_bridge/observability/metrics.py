"""Prometheus metrics for qmd executions and index runs."""

from __future__ import annotations

from contextlib import contextmanager
import time
from typing import TYPE_CHECKING

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


if TYPE_CHECKING:
    from collections.abc import Generator


EXECUTION_COUNT = Counter(
    "qmd_executions_total",
    "Total qmd executions through the gateway",
    ["command", "status"],
)

EXECUTION_LATENCY = Histogram(
    "qmd_execution_latency_seconds",
    "qmd execution latency in seconds",
    ["command"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

ACTIVE_EXECUTIONS = Gauge(
    "qmd_active_executions",
    "qmd executions currently in flight",
)

INDEX_RUNS = Counter(
    "qmd_index_runs_total",
    "Index pipeline runs per outcome",
    ["status"],
)

AUTH_FAILURES = Counter(
    "qmd_auth_failures_total",
    "Rejected bearer credentials",
    ["surface"],
)


@contextmanager
def track_latency(histogram: Histogram, **labels: str) -> Generator[None, None, None]:
    """Context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        histogram.labels(**labels).observe(time.perf_counter() - start)


def get_metrics() -> bytes:
    """Generate Prometheus metrics output."""
    return generate_latest()


def get_metrics_content_type() -> str:
    """Get content type for metrics endpoint."""
    return CONTENT_TYPE_LATEST
