"""SIGINT/SIGTERM handling for the foreground server."""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import TYPE_CHECKING


if TYPE_CHECKING:
    from starlette.applications import Starlette


logger = logging.getLogger(__name__)


def install_shutdown_signals(app: Starlette) -> asyncio.Event:
    """Set ``app.state.shutdown_event`` on the first SIGINT/SIGTERM; later signals are ignored."""

    existing = getattr(app.state, "shutdown_event", None)
    if isinstance(existing, asyncio.Event):
        return existing

    shutdown_event = asyncio.Event()

    def _handler(signum: int, frame: object | None) -> None:  # pragma: no cover - signal glue
        if shutdown_event.is_set():
            return
        logger.info("Received %s, stopping background indexing", signal.Signals(signum).name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:  # pragma: no cover - not on the main thread
            logger.debug("Cannot install %s handler outside the main thread", sig.name)

    app.state.shutdown_event = shutdown_event
    return shutdown_event
