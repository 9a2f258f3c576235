"""Shared test fixtures and configuration."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path

import pytest

from qmd_bridge.config import BridgeConfig
from qmd_bridge.store import ConfigStore
from qmd_bridge.tenants import TenantRegistry


@dataclass
class FakeQmd:
    """Executable shell script standing in for qmd; records every argv it receives."""

    path: Path
    log: Path

    def calls(self) -> list[list[str]]:
        if not self.log.exists():
            return []
        return [line.split("\x1f")[:-1] for line in self.log.read_text(encoding="utf-8").splitlines()]


@pytest.fixture(autouse=True)
def isolated_config_dir(tmp_path, monkeypatch) -> Path:
    """Point every Settings() at a throwaway config directory."""
    config_dir = tmp_path / "qmd-bridge-config"
    monkeypatch.setenv("QMD_BRIDGE_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("QMD_BRIDGE_LOG_JSON", "false")
    return config_dir


@pytest.fixture
def make_qmd(tmp_path) -> Callable[..., FakeQmd]:
    """Factory writing a fake ``qmd`` whose behaviour is the given shell snippet.

    Long-running snippets must ``exec`` their sleep so killing the script
    also closes its pipes.
    """
    counter = 0

    def factory(body: str = 'echo "ok"') -> FakeQmd:
        nonlocal counter
        counter += 1
        script = tmp_path / f"fake-qmd-{counter}"
        log = tmp_path / f"fake-qmd-{counter}.log"
        script.write_text(
            "#!/bin/sh\n"
            f'for arg in "$@"; do printf \'%s\\037\' "$arg" >> "{log}"; done\n'
            f'echo >> "{log}"\n'
            f"{body}\n",
            encoding="utf-8",
        )
        script.chmod(0o755)
        return FakeQmd(path=script, log=log)

    return factory


@pytest.fixture
def store(tmp_path) -> ConfigStore:
    return ConfigStore(tmp_path / "store" / "config.json")


@pytest.fixture
def bridge_config(store) -> BridgeConfig:
    return BridgeConfig(store)


@pytest.fixture
def registry(store) -> TenantRegistry:
    return TenantRegistry(store)


@pytest.fixture
def docs_dir(tmp_path) -> Path:
    path = tmp_path / "docs"
    path.mkdir()
    (path / "readme.md").write_text("# hello\n", encoding="utf-8")
    return path
