"""JSON-file key-value store backing tenants and bridge settings."""

from __future__ import annotations

from collections.abc import Callable
import copy
import json
import logging
import os
from pathlib import Path
import shutil
from typing import Any


logger = logging.getLogger(__name__)

_MISSING = object()
FILE_MODE = 0o600


class ConfigStore:
    """Durable nested key-value document addressed by dotted paths.

    ``store.get("server.port")`` walks ``{"server": {"port": ...}}``. The file
    is re-read whenever its mtime or size changes, so a CLI process and a
    running server observe each other's writes. Writes land in an owner-only
    (0600) temp file that is moved over the previous one, so the file never
    becomes readable by other users.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)
        self._data: dict[str, Any] = {}
        self._stamp: tuple[int, int] | None = None
        self._writes = 0
        self._reload_if_changed()

    @property
    def revision(self) -> tuple[tuple[int, int] | None, int]:
        """Opaque marker that changes whenever the stored document changes."""
        self._reload_if_changed()
        return (self._stamp, self._writes)

    def get(self, key: str, default: Any = None) -> Any:
        self._reload_if_changed()
        node: Any = self._data
        for part in self._split(key):
            if not isinstance(node, dict) or part not in node:
                return default
            node = node[part]
        return copy.deepcopy(node)

    def set(self, key: str, value: Any) -> None:
        def mutate(data: dict[str, Any]) -> None:
            parts = self._split(key)
            node = data
            for part in parts[:-1]:
                child = node.get(part)
                if not isinstance(child, dict):
                    child = {}
                    node[part] = child
                node = child
            node[parts[-1]] = copy.deepcopy(value)

        self.update(mutate)

    def delete(self, key: str) -> bool:
        removed = False

        def mutate(data: dict[str, Any]) -> None:
            nonlocal removed
            parts = self._split(key)
            node: Any = data
            for part in parts[:-1]:
                node = node.get(part) if isinstance(node, dict) else None
                if node is None:
                    return
            if isinstance(node, dict) and node.pop(parts[-1], _MISSING) is not _MISSING:
                removed = True

        self.update(mutate)
        return removed

    def update(self, mutator: Callable[[dict[str, Any]], None]) -> None:
        """Apply ``mutator`` to a copy of the document and persist it in one write."""
        self._reload_if_changed()
        draft = copy.deepcopy(self._data)
        mutator(draft)
        self._write(draft)
        self._data = draft

    def as_dict(self) -> dict[str, Any]:
        self._reload_if_changed()
        return copy.deepcopy(self._data)

    def harden_permissions(self) -> None:
        """Restrict the store file to owner read/write."""
        try:
            os.chmod(self.path, FILE_MODE)
        except OSError as exc:
            logger.warning("Could not restrict permissions on %s: %s", self.path, exc)

    def _reload_if_changed(self) -> None:
        stamp = self._stat()
        if stamp == self._stamp:
            return
        self._stamp = stamp
        if stamp is None:
            self._data = {}
            return
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except (OSError, json.JSONDecodeError) as exc:
            logger.error("Failed to read config store %s: %s", self.path, exc)
            payload = {}
        self._data = payload if isinstance(payload, dict) else {}

    def _write(self, payload: dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, FILE_MODE)
        os.fchmod(fd, FILE_MODE)  # O_CREAT does not narrow a leftover temp file
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(payload, handle, indent=2, sort_keys=True)
        shutil.move(str(tmp_path), str(self.path))
        self._writes += 1
        self._stamp = self._stat()

    def _stat(self) -> tuple[int, int] | None:
        try:
            stat = self.path.stat()
        except FileNotFoundError:
            return None
        return (stat.st_mtime_ns, stat.st_size)

    @staticmethod
    def _split(key: str) -> list[str]:
        parts = [part for part in key.split(".") if part]
        if not parts:
            raise ValueError("Config key must not be empty")
        return parts
