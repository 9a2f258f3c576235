"""Tenant registry: durable label-keyed records with token lookup."""

from __future__ import annotations

from dataclasses import asdict, dataclass, replace
from datetime import datetime, timezone
import logging
import os
from pathlib import Path
from typing import Any

from .errors import AlreadyExists, InvalidPath, NotFound
from .store import ConfigStore
from .tokens import generate_token


logger = logging.getLogger(__name__)

TENANTS_KEY = "tenants"


@dataclass(frozen=True)
class Tenant:
    """One isolated consumer bound to a host directory and a qmd collection."""

    label: str
    """Unique identifier; also the storage key and default collection name."""

    display_name: str
    """Human-readable name, not required to be unique."""

    path: str
    """Absolute host directory holding the tenant's documents."""

    collection: str
    """qmd collection every search and index run is scoped to."""

    token: str
    """Bearer credential; the only way to act as this tenant."""

    created_at: str
    """ISO-8601 UTC creation time."""

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Tenant:
        label = str(record["label"])
        return cls(
            label=label,
            display_name=str(record.get("display_name") or label),
            path=str(record["path"]),
            collection=str(record.get("collection") or label),
            token=str(record["token"]),
            created_at=str(record.get("created_at") or ""),
        )

    def to_record(self) -> dict[str, Any]:
        return asdict(self)

    def public_dict(self) -> dict[str, Any]:
        """Record without the token, safe to show to other tenants and agents."""
        return {
            "label": self.label,
            "display_name": self.display_name,
            "collection": self.collection,
            "path": self.path,
            "created_at": self.created_at,
        }


def _dangerous_paths() -> set[str]:
    return {os.path.normpath("/"), os.path.normpath(str(Path.home()))}


def validate_tenant_path(path: str) -> None:
    """Raise :class:`InvalidPath` unless ``path`` is a safe, existing, absolute directory."""

    if not path or not os.path.isabs(path):
        raise InvalidPath("not_absolute", f"Path must be absolute: {path!r}")

    if os.path.normpath(path) in _dangerous_paths():
        raise InvalidPath("dangerous", f"Refusing to use {path!r} as a tenant path")

    if not os.path.exists(path):
        raise InvalidPath("missing", f"Path does not exist: {path!r}")

    if not os.path.isdir(path):
        raise InvalidPath("not_a_directory", f"Path is not a directory: {path!r}")


class TenantRegistry:
    """Label-keyed tenant store with an O(1) token index.

    Records live under the ``tenants`` key of the :class:`ConfigStore` and every
    mutation is written through before the call returns. The token index is
    rebuilt whenever the store revision moves, which also covers writes made
    by another process (for example the CLI rotating a token while the server
    is running).
    """

    def __init__(self, store: ConfigStore) -> None:
        self.store = store
        self._by_token: dict[str, str] = {}
        self._indexed_revision: object = None

    def list(self) -> list[Tenant]:
        return [Tenant.from_record(record) for record in self._records().values()]

    def get(self, label: str) -> Tenant | None:
        record = self._records().get(label)
        return Tenant.from_record(record) if record else None

    def get_by_token(self, token: str) -> Tenant | None:
        if not token:
            return None
        self._refresh_token_index()
        label = self._by_token.get(token)
        if label is None:
            return None
        tenant = self.get(label)
        if tenant is None or tenant.token != token:
            return None
        return tenant

    def add(
        self,
        label: str,
        display_name: str,
        path: str,
        collection: str | None = None,
    ) -> tuple[Tenant, str]:
        """Create a tenant and return it with its freshly generated token."""

        if self.get(label) is not None:
            raise AlreadyExists(f"Tenant {label!r} already exists")
        validate_tenant_path(path)

        tenant = Tenant(
            label=label,
            display_name=display_name or label,
            path=path,
            collection=collection or label,
            token=self._unique_token(),
            created_at=datetime.now(timezone.utc).isoformat(),
        )

        def mutate(data: dict[str, Any]) -> None:
            data.setdefault(TENANTS_KEY, {})[label] = tenant.to_record()

        self._commit(mutate)
        logger.info("Tenant added: %s (collection=%s)", label, tenant.collection)
        return tenant, tenant.token

    def edit(
        self,
        label: str,
        *,
        new_label: str | None = None,
        display_name: str | None = None,
        path: str | None = None,
        collection: str | None = None,
    ) -> Tenant:
        """Apply a partial update; a new label re-keys the record in one write."""

        current = self.get(label)
        if current is None:
            raise NotFound(f"Tenant {label!r} not found")

        renaming = bool(new_label) and new_label != label
        if renaming and self.get(new_label) is not None:
            raise AlreadyExists(f"Tenant {new_label!r} already exists")

        if path and path != current.path:
            validate_tenant_path(path)

        updated = replace(
            current,
            label=new_label or current.label,
            display_name=display_name or current.display_name,
            path=path or current.path,
            collection=collection or current.collection,
        )

        def mutate(data: dict[str, Any]) -> None:
            tenants = data.setdefault(TENANTS_KEY, {})
            if renaming:
                tenants.pop(label, None)
            tenants[updated.label] = updated.to_record()

        self._commit(mutate)
        logger.info("Tenant updated: %s", updated.label)
        return updated

    def remove(self, label: str) -> None:
        if self.get(label) is None:
            raise NotFound(f"Tenant {label!r} not found")

        def mutate(data: dict[str, Any]) -> None:
            data.setdefault(TENANTS_KEY, {}).pop(label, None)

        self._commit(mutate)
        logger.info("Tenant removed: %s", label)

    def rotate_token(self, label: str) -> str:
        """Replace the tenant token; the previous one stops resolving immediately."""

        current = self.get(label)
        if current is None:
            raise NotFound(f"Tenant {label!r} not found")

        rotated = replace(current, token=self._unique_token())

        def mutate(data: dict[str, Any]) -> None:
            data.setdefault(TENANTS_KEY, {})[label] = rotated.to_record()

        self._commit(mutate)
        logger.info("Token rotated for tenant %s", label)
        return rotated.token

    def __len__(self) -> int:
        return len(self._records())

    def __contains__(self, label: object) -> bool:
        return isinstance(label, str) and label in self._records()

    def _records(self) -> dict[str, dict[str, Any]]:
        raw = self.store.get(TENANTS_KEY) or {}
        return {label: record for label, record in raw.items() if isinstance(record, dict)}

    def _commit(self, mutator) -> None:
        self.store.update(mutator)
        self.store.harden_permissions()
        self._refresh_token_index(force=True)

    def _refresh_token_index(self, *, force: bool = False) -> None:
        revision = self.store.revision
        if not force and revision == self._indexed_revision:
            return
        index: dict[str, str] = {}
        collisions: set[str] = set()
        for label, record in self._records().items():
            token = record.get("token")
            if not token:
                continue
            if token in index:
                # Ambiguous credentials authenticate nobody.
                logger.error("Token collision between tenants %s and %s", index[token], label)
                collisions.add(token)
                continue
            index[token] = label
        for token in collisions:
            index.pop(token, None)
        self._by_token = index
        self._indexed_revision = revision

    def _unique_token(self) -> str:
        self._refresh_token_index()
        token = generate_token()
        while token in self._by_token:
            token = generate_token()
        return token
