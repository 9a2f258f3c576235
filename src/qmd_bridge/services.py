"""Wiring of the registry, gateway and scheduler shared by HTTP and MCP surfaces."""

from __future__ import annotations

from dataclasses import dataclass, field
import time
from typing import Any

from .config import BridgeConfig, Settings
from .constants import VERSION
from .executor import CommandExecutor
from .indexing import IndexingManager
from .store import ConfigStore
from .tenants import TenantRegistry


@dataclass
class BridgeServices:
    """Everything a request handler needs, owned by one server instance."""

    config: BridgeConfig
    registry: TenantRegistry
    executor: CommandExecutor
    indexing: IndexingManager
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def from_store(cls, store: ConfigStore) -> BridgeServices:
        config = BridgeConfig(store)
        registry = TenantRegistry(store)
        return cls(
            config=config,
            registry=registry,
            executor=CommandExecutor(config),
            indexing=IndexingManager(config, registry=registry),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> BridgeServices:
        return cls.from_store(settings.open_store())

    def health(self) -> dict[str, Any]:
        return {
            "status": "ok",
            "version": VERSION,
            "uptime": int(time.monotonic() - self.started_at),
            "active_executions": self.executor.active_count,
            "indexing": self.indexing.stats,
        }
