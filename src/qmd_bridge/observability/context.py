"""Per-request log context propagated across async boundaries."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from uuid import uuid4


log_context: ContextVar[dict | None] = ContextVar("log_context", default=None)


def generate_request_id() -> str:
    """Generate a 16-char hex request ID."""
    return uuid4().hex[:16]


def get_log_context() -> dict:
    return log_context.get() or {}


@contextmanager
def tenant_context(tenant: str, **extra: object) -> Iterator[dict]:
    """Bind ``tenant`` (and a request id) to every log line emitted inside the block."""
    ctx = {**get_log_context(), "tenant": tenant, "request_id": generate_request_id(), **extra}
    token = log_context.set(ctx)
    try:
        yield ctx
    finally:
        log_context.reset(token)
