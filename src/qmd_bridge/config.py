"""Configuration for qmd-bridge.

Two layers:

* :class:`Settings` - process-level knobs from ``QMD_BRIDGE_*`` environment
  variables (where the config directory lives, how to log).
* :class:`BridgeConfig` - operator settings persisted in the config store
  (server limits, indexing strategy, qmd path), validated with Pydantic every
  time they are read so edits made by the CLI apply without a restart.
"""

from __future__ import annotations

from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from .constants import (
    CONFIG_FILE_NAME,
    DEFAULT_CONFIG_DIR,
    DEFAULT_EXECUTION_TIMEOUT_MS,
    DEFAULT_HOST,
    DEFAULT_INDEX_TIMEOUT_MS,
    DEFAULT_INDEXING_STRATEGY,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_OUTPUT_BYTES,
    DEFAULT_PERIODIC_INTERVAL_S,
    DEFAULT_PORT,
    DEFAULT_WATCH_DEBOUNCE_S,
    LOG_DIR_NAME,
    PID_FILE_NAME,
)
from .errors import ConfigError
from .store import ConfigStore


class Settings(BaseSettings):
    """Environment-driven process settings."""

    model_config = SettingsConfigDict(
        env_prefix="QMD_BRIDGE_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    config_dir: Path = Field(default=DEFAULT_CONFIG_DIR, description="Directory holding config, PID file and logs")
    log_level: str = Field(default="info", description="Root logging level")
    log_json: bool = Field(default=True, description="Emit structured JSON logs")
    log_to_file: bool = Field(default=False, description="Also write logs to the daily file under logs/")

    @property
    def config_path(self) -> Path:
        return self.config_dir / CONFIG_FILE_NAME

    @property
    def pid_file(self) -> Path:
        return self.config_dir / PID_FILE_NAME

    @property
    def log_dir(self) -> Path:
        return self.config_dir / LOG_DIR_NAME

    def open_store(self) -> ConfigStore:
        self.config_dir.mkdir(parents=True, exist_ok=True)
        return ConfigStore(self.config_path)


class ServerConfig(BaseModel):
    """HTTP binding and execution gateway limits."""

    model_config = {"extra": "ignore"}

    host: str = DEFAULT_HOST
    port: Annotated[int, Field(ge=1, le=65535)] = DEFAULT_PORT
    execution_timeout_ms: Annotated[
        int,
        Field(ge=1, description="Kill a qmd query that runs longer than this"),
    ] = DEFAULT_EXECUTION_TIMEOUT_MS
    max_concurrent: Annotated[
        int,
        Field(ge=0, description="Maximum in-flight qmd executions (0 = unlimited)"),
    ] = DEFAULT_MAX_CONCURRENT
    max_output_bytes: Annotated[
        int,
        Field(ge=1, description="Largest stdout accepted from qmd before the call fails"),
    ] = DEFAULT_MAX_OUTPUT_BYTES


class IndexingConfig(BaseModel):
    """Background indexing strategy."""

    model_config = {"extra": "ignore"}

    strategy: Literal["manual", "periodic", "watch"] = DEFAULT_INDEXING_STRATEGY
    periodic_interval: Annotated[
        float,
        Field(gt=0, description="Seconds between periodic index runs"),
    ] = DEFAULT_PERIODIC_INTERVAL_S
    watch_debounce: Annotated[
        float,
        Field(ge=0, description="Quiet seconds required after the last file change"),
    ] = DEFAULT_WATCH_DEBOUNCE_S
    index_timeout_ms: Annotated[int, Field(ge=1)] = DEFAULT_INDEX_TIMEOUT_MS


class BridgeConfig:
    """Typed view over the ``server``, ``indexing`` and ``qmd_path`` store keys."""

    def __init__(self, store: ConfigStore) -> None:
        self.store = store

    @property
    def path(self) -> Path:
        return self.store.path

    def server(self) -> ServerConfig:
        return self._load(ServerConfig, "server")

    def indexing(self) -> IndexingConfig:
        return self._load(IndexingConfig, "indexing")

    def qmd_path(self) -> str:
        value = self.store.get("qmd_path")
        return value if isinstance(value, str) and value.strip() else "qmd"

    def save_server(self, **values: Any) -> ServerConfig:
        return self._save(ServerConfig, "server", values)

    def save_indexing(self, **values: Any) -> IndexingConfig:
        return self._save(IndexingConfig, "indexing", values)

    def save_qmd_path(self, qmd_path: str) -> None:
        self.store.set("qmd_path", qmd_path.strip())

    def _load(self, model: type[BaseModel], key: str) -> Any:
        raw = self.store.get(key) or {}
        try:
            return model.model_validate(raw)
        except ValidationError as exc:
            raise ConfigError(f"Invalid '{key}' settings in {self.store.path}: {exc}") from exc

    def _save(self, model: type[BaseModel], key: str, values: dict[str, Any]) -> Any:
        current = self.store.get(key) or {}
        merged = {**current, **{name: value for name, value in values.items() if value is not None}}
        try:
            validated = model.model_validate(merged)
        except ValidationError as exc:
            raise ConfigError(f"Invalid '{key}' settings: {exc}") from exc
        self.store.set(key, validated.model_dump())
        return validated
