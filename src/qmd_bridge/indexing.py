"""Background indexing: per-tenant scheduling and the single-flight index pipeline."""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Iterable
from contextlib import suppress
import logging
import os
import re
import time
from typing import Any

import anyio
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .config import BridgeConfig, IndexingConfig
from .constants import COLLECTION_LIST_TIMEOUT_MS
from .observability.metrics import INDEX_RUNS
from .process import run_process
from .tenants import Tenant, TenantRegistry


logger = logging.getLogger(__name__)

_OBSERVER_JOIN_TIMEOUT_S = 5.0
_CHANGE_EVENT_TYPES = frozenset({"created", "modified", "deleted", "moved"})
_ROOT_GONE_EVENT_TYPES = frozenset({"deleted", "moved"})
_LISTING_SEPARATORS = re.compile(r"[\s:()\[\],]+")


def collection_listed(listing: str, collection: str) -> bool:
    """Return True when ``collection`` appears as a whole name in ``qmd collection list`` output."""
    for line in listing.splitlines():
        if collection in _LISTING_SEPARATORS.split(line.strip()):
            return True
    return False


class _TenantChangeHandler(FileSystemEventHandler):
    """Forwards filesystem events from the observer thread to the event loop."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        notify: Callable[[str], None],
        label: str,
        root: str,
    ) -> None:
        super().__init__()
        self._loop = loop
        self._notify = notify
        self._label = label
        self._root = os.path.normpath(root)

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.event_type not in _CHANGE_EVENT_TYPES:
            return
        if event.event_type in _ROOT_GONE_EVENT_TYPES and self._is_root(event.src_path):
            # The emitter stops with its root; nothing further arrives for this tenant.
            logger.warning(
                "Watched directory %s for tenant %s was %s; file watching stopped",
                self._root,
                self._label,
                event.event_type,
                extra={"tenant_label": self._label},
            )
            return
        with suppress(RuntimeError):  # loop already closed during shutdown
            self._loop.call_soon_threadsafe(self._notify, self._label)

    def _is_root(self, src_path: str | bytes) -> bool:
        return os.path.normpath(os.fsdecode(src_path)) == self._root


class IndexingManager:
    """Keeps every tenant's qmd collection fresh.

    Strategy (read once in :meth:`start`):

    * ``manual``   - nothing is scheduled; only :meth:`trigger_index` runs the pipeline.
    * ``periodic`` - one asyncio task per tenant fires every ``periodic_interval`` seconds.
    * ``watch``    - one watchdog observer per tenant; a burst of changes fires once
      ``watch_debounce`` seconds after the last event.

    At most one pipeline per tenant label runs at a time. A trigger that finds
    the tenant already running is dropped, never queued.

    With a ``registry``, scheduled jobs look their tenant up by label each time
    they fire: an edited path or collection is used on the next run, and a
    removed (or renamed) tenant's job is retired. Tenants added after
    :meth:`start` are scheduled at the next restart.
    """

    def __init__(
        self,
        config: BridgeConfig,
        *,
        registry: TenantRegistry | None = None,
        observer_factory: Callable[[], Any] = Observer,
    ) -> None:
        self.config = config
        self.registry = registry
        self._observer_factory = observer_factory
        self._settings: IndexingConfig | None = None
        self._started = False
        self._loop: asyncio.AbstractEventLoop | None = None

        self._in_progress: set[str] = set()
        self._pipeline_tasks: set[asyncio.Task] = set()
        self._periodic_tasks: dict[str, asyncio.Task] = {}
        self._observers: dict[str, Any] = {}
        self._retired_observers: list[Any] = []
        self._watched: dict[str, Tenant] = {}
        self._debounce_handles: dict[str, asyncio.TimerHandle] = {}

    @property
    def strategy(self) -> str | None:
        return self._settings.strategy if self._settings else None

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "running": self._started,
            "in_progress": sorted(self._in_progress),
            "scheduled": sorted(self._periodic_tasks),
            "watched": sorted(self._observers),
        }

    def start(self, tenants: Iterable[Tenant]) -> None:
        """Install timers or observers for ``tenants`` according to the configured strategy."""
        if self._started:
            logger.debug("IndexingManager already started; ignoring start()")
            return

        self._settings = self.config.indexing()
        self._loop = asyncio.get_running_loop()
        self._started = True

        tenant_list = list(tenants)
        if self._settings.strategy == "manual":
            logger.info("IndexingManager started (manual strategy, %d tenants)", len(tenant_list))
            return

        for tenant in tenant_list:
            if self._settings.strategy == "periodic":
                self._start_periodic(tenant, self._settings.periodic_interval)
            else:
                self._start_watch(tenant)

        logger.info(
            "IndexingManager started",
            extra={"strategy": self._settings.strategy, "tenant_count": len(tenant_list)},
        )

    async def stop(self) -> None:
        """Cancel timers, pending debounces and observers. In-flight pipelines keep running."""
        for handle in self._debounce_handles.values():
            handle.cancel()
        self._debounce_handles.clear()

        periodic = list(self._periodic_tasks.values())
        self._periodic_tasks.clear()
        for task in periodic:
            task.cancel()
        for task in periodic:
            with suppress(asyncio.CancelledError):
                await task

        observers = [*self._observers.values(), *self._retired_observers]
        self._observers.clear()
        self._retired_observers.clear()
        self._watched.clear()
        for observer in observers:
            observer.stop()
        for observer in observers:
            await anyio.to_thread.run_sync(observer.join, _OBSERVER_JOIN_TIMEOUT_S)

        if self._started:
            logger.info("IndexingManager stopped")
        self._started = False

    async def aclose(self) -> None:
        """Stop scheduling and wait for in-flight pipelines to finish."""
        await self.stop()
        if self._pipeline_tasks:
            await asyncio.gather(*self._pipeline_tasks, return_exceptions=True)

    def is_in_progress(self, label: str) -> bool:
        return label in self._in_progress

    def trigger_index(self, tenant: Tenant) -> bool:
        """Start the pipeline in the background and return immediately.

        Returns False when the tenant was already running and nothing was started.
        """
        if not self._acquire(tenant.label):
            return False
        try:
            task = asyncio.create_task(self._run_pipeline(tenant), name=f"index:{tenant.label}")
        except RuntimeError:
            self._in_progress.discard(tenant.label)
            raise
        self._pipeline_tasks.add(task)
        task.add_done_callback(self._pipeline_tasks.discard)
        return True

    async def run_index(self, tenant: Tenant) -> bool:
        """Run the pipeline in the caller's task; False if skipped or failed."""
        if not self._acquire(tenant.label):
            return False
        return await self._run_pipeline(tenant)

    def _acquire(self, label: str) -> bool:
        if label in self._in_progress:
            logger.info("Index already in progress for %s, skipping", label)
            return False
        self._in_progress.add(label)
        return True

    def _current(self, tenant: Tenant) -> Tenant | None:
        if self.registry is None:
            return tenant
        current = self.registry.get(tenant.label)
        if current is None:
            logger.info("Tenant %s no longer exists; retiring its background indexing", tenant.label)
        return current

    async def _run_pipeline(self, tenant: Tenant) -> bool:
        start = time.perf_counter()
        try:
            settings = self.config.indexing()
            max_output_bytes = self.config.server().max_output_bytes
            qmd_path = self.config.qmd_path()
            logger.info("Starting index for %s (collection=%s)", tenant.label, tenant.collection)

            listing = await self._run_qmd(
                qmd_path, ["collection", "list"], COLLECTION_LIST_TIMEOUT_MS, max_output_bytes
            )
            if not collection_listed(listing, tenant.collection):
                logger.info("Collection %s not found, creating it", tenant.collection)
                await self._run_qmd(
                    qmd_path,
                    ["collection", "add", tenant.path, "--name", tenant.collection],
                    settings.index_timeout_ms,
                    max_output_bytes,
                )

            await self._run_qmd(
                qmd_path, ["embed", "-c", tenant.collection], settings.index_timeout_ms, max_output_bytes
            )
        except asyncio.CancelledError:
            INDEX_RUNS.labels(status="cancelled").inc()
            raise
        except Exception as exc:  # background job: nothing above us to report to
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            INDEX_RUNS.labels(status="failed").inc()
            logger.error(
                "Index failed for %s after %dms: %s",
                tenant.label,
                elapsed_ms,
                exc,
                extra={"error_type": type(exc).__name__},
            )
            return False
        else:
            elapsed_ms = int((time.perf_counter() - start) * 1000)
            INDEX_RUNS.labels(status="ok").inc()
            logger.info("Index completed for %s in %dms", tenant.label, elapsed_ms)
            return True
        finally:
            self._in_progress.discard(tenant.label)

    async def _run_qmd(self, qmd_path: str, args: list[str], timeout_ms: int, max_output_bytes: int) -> str:
        result = await run_process(
            [qmd_path, *args],
            timeout_s=timeout_ms / 1000,
            max_output_bytes=max_output_bytes,
        )
        return result.stdout

    def _start_periodic(self, tenant: Tenant, interval: float) -> None:
        self._periodic_tasks[tenant.label] = asyncio.create_task(
            self._periodic_loop(tenant, interval),
            name=f"periodic-index:{tenant.label}",
        )
        logger.info("Periodic indexing scheduled for %s every %ss", tenant.label, interval)

    async def _periodic_loop(self, tenant: Tenant, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            current = self._current(tenant)
            if current is None:
                self._periodic_tasks.pop(tenant.label, None)
                return
            self.trigger_index(current)

    def _start_watch(self, tenant: Tenant) -> None:
        assert self._loop is not None
        handler = _TenantChangeHandler(self._loop, self._on_change, tenant.label, tenant.path)
        observer = self._observer_factory()
        try:
            observer.schedule(handler, tenant.path, recursive=True)
            observer.start()
        except OSError as exc:
            logger.warning("Cannot watch %s for tenant %s: %s", tenant.path, tenant.label, exc)
            return
        self._observers[tenant.label] = observer
        self._watched[tenant.label] = tenant
        logger.info(
            "File watching started for %s (debounce %ss)",
            tenant.label,
            self._settings.watch_debounce if self._settings else None,
        )

    def _retire_watch(self, label: str) -> None:
        self._watched.pop(label, None)
        observer = self._observers.pop(label, None)
        if observer is not None:
            observer.stop()
            self._retired_observers.append(observer)

    def _on_change(self, label: str) -> None:
        tenant = self._watched.get(label)
        if tenant is None or self._loop is None or self._settings is None:
            return
        pending = self._debounce_handles.pop(label, None)
        if pending is not None:
            pending.cancel()
        self._debounce_handles[label] = self._loop.call_later(
            self._settings.watch_debounce,
            self._fire_debounced,
            label,
        )

    def _fire_debounced(self, label: str) -> None:
        self._debounce_handles.pop(label, None)
        tenant = self._watched.get(label)
        if tenant is None:
            return
        current = self._current(tenant)
        if current is None:
            self._retire_watch(label)
            return
        if current.path != tenant.path:
            logger.info("Tenant %s moved to %s; watching the new path", label, current.path)
            self._retire_watch(label)
            self._start_watch(current)
        logger.debug("Changes settled for %s, triggering index", label)
        self.trigger_index(current)
