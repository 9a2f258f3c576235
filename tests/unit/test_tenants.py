"""Tests for the tenant registry and path validation."""

from __future__ import annotations

from pathlib import Path

import pytest

from qmd_bridge.errors import AlreadyExists, InvalidPath, NotFound
from qmd_bridge.store import ConfigStore
from qmd_bridge.tenants import Tenant, TenantRegistry, validate_tenant_path
from qmd_bridge.tokens import generate_token, looks_like_token


@pytest.mark.unit
class TestValidateTenantPath:
    def test_real_directory_passes(self, docs_dir):
        validate_tenant_path(str(docs_dir))

    def test_relative_path(self):
        with pytest.raises(InvalidPath) as exc_info:
            validate_tenant_path("docs/notes")
        assert exc_info.value.reason == "not_absolute"

    def test_empty_path(self):
        with pytest.raises(InvalidPath) as exc_info:
            validate_tenant_path("")
        assert exc_info.value.reason == "not_absolute"

    @pytest.mark.parametrize("path", ["/", "/./", "/tmp/.."])
    def test_root_is_dangerous(self, path):
        with pytest.raises(InvalidPath) as exc_info:
            validate_tenant_path(path)
        assert exc_info.value.reason == "dangerous"

    def test_home_is_dangerous(self):
        with pytest.raises(InvalidPath) as exc_info:
            validate_tenant_path(str(Path.home()) + "/")
        assert exc_info.value.reason == "dangerous"

    def test_missing(self, tmp_path):
        with pytest.raises(InvalidPath) as exc_info:
            validate_tenant_path(str(tmp_path / "missing"))
        assert exc_info.value.reason == "missing"

    def test_file_is_not_a_directory(self, docs_dir):
        with pytest.raises(InvalidPath) as exc_info:
            validate_tenant_path(str(docs_dir / "readme.md"))
        assert exc_info.value.reason == "not_a_directory"

    def test_payload_exposes_reason_but_not_path(self, tmp_path):
        with pytest.raises(InvalidPath) as exc_info:
            validate_tenant_path(str(tmp_path / "secret-dir"))
        payload = exc_info.value.to_payload()
        assert payload["reason"] == "missing"
        assert "secret-dir" not in payload["message"]


@pytest.mark.unit
class TestTokens:
    def test_generated_token_format(self):
        token = generate_token()
        assert token.startswith("qmd_sk_")
        assert len(token) == len("qmd_sk_") + 32
        assert looks_like_token(token)

    def test_tokens_are_unique(self):
        assert len({generate_token() for _ in range(200)}) == 200

    @pytest.mark.parametrize("value", ["", "qmd_sk_", "qmd_sk_XYZ", "sk_" + "a" * 32, "qmd_sk_" + "A" * 32])
    def test_malformed_tokens(self, value):
        assert not looks_like_token(value)


@pytest.mark.unit
class TestTenantRegistry:
    def test_add_defaults_and_lookup(self, registry, docs_dir):
        tenant, token = registry.add("notes", "", str(docs_dir))

        assert tenant.display_name == "notes"
        assert tenant.collection == "notes"
        assert tenant.token == token
        assert looks_like_token(token)
        assert tenant.created_at
        assert registry.get("notes") == tenant
        assert registry.get_by_token(token) == tenant
        assert "notes" in registry
        assert len(registry) == 1

    def test_add_with_explicit_collection(self, registry, docs_dir):
        tenant, _ = registry.add("notes", "My Notes", str(docs_dir), collection="kb-notes")

        assert tenant.display_name == "My Notes"
        assert tenant.collection == "kb-notes"

    def test_duplicate_label_rejected(self, registry, docs_dir):
        registry.add("notes", "Notes", str(docs_dir))

        with pytest.raises(AlreadyExists):
            registry.add("notes", "Other", str(docs_dir))

    def test_invalid_path_is_not_persisted(self, registry):
        with pytest.raises(InvalidPath):
            registry.add("bad", "Bad", "relative/path")
        assert registry.get("bad") is None

    def test_unknown_token_resolves_to_nobody(self, registry, docs_dir):
        registry.add("notes", "Notes", str(docs_dir))

        assert registry.get_by_token(generate_token()) is None
        assert registry.get_by_token("") is None

    def test_tokens_are_distinct_per_tenant(self, registry, docs_dir, tmp_path):
        other_dir = tmp_path / "other"
        other_dir.mkdir()
        a, token_a = registry.add("a", "A", str(docs_dir))
        b, token_b = registry.add("b", "B", str(other_dir))

        assert token_a != token_b
        assert registry.get_by_token(token_a).label == "a"
        assert registry.get_by_token(token_b).label == "b"

    def test_rotate_invalidates_old_token(self, registry, docs_dir):
        _, old_token = registry.add("notes", "Notes", str(docs_dir))

        new_token = registry.rotate_token("notes")

        assert new_token != old_token
        assert registry.get_by_token(old_token) is None
        assert registry.get_by_token(new_token).label == "notes"

    def test_rotate_unknown_label(self, registry):
        with pytest.raises(NotFound):
            registry.rotate_token("ghost")

    def test_rename_rekeys_record(self, registry, docs_dir):
        _, token = registry.add("notes", "Notes", str(docs_dir))

        updated = registry.edit("notes", new_label="journal", display_name="Journal")

        assert updated.label == "journal"
        assert updated.collection == "notes"
        assert registry.get("notes") is None
        assert registry.get("journal") == updated
        assert registry.get_by_token(token).label == "journal"

    def test_rename_onto_existing_label(self, registry, docs_dir, tmp_path):
        other_dir = tmp_path / "other"
        other_dir.mkdir()
        registry.add("a", "A", str(docs_dir))
        registry.add("b", "B", str(other_dir))

        with pytest.raises(AlreadyExists):
            registry.edit("a", new_label="b")

    def test_edit_validates_new_path(self, registry, docs_dir):
        registry.add("notes", "Notes", str(docs_dir))

        with pytest.raises(InvalidPath) as exc_info:
            registry.edit("notes", path="/")
        assert exc_info.value.reason == "dangerous"
        assert registry.get("notes").path == str(docs_dir)

    def test_edit_unknown_label(self, registry):
        with pytest.raises(NotFound):
            registry.edit("ghost", display_name="Boo")

    def test_remove(self, registry, docs_dir):
        _, token = registry.add("notes", "Notes", str(docs_dir))

        registry.remove("notes")

        assert registry.get("notes") is None
        assert registry.get_by_token(token) is None
        with pytest.raises(NotFound):
            registry.remove("notes")

    def test_store_file_is_owner_only(self, registry, docs_dir):
        registry.add("notes", "Notes", str(docs_dir))

        assert registry.store.path.stat().st_mode & 0o777 == 0o600

    def test_labels_with_dots_are_kept_whole(self, registry, docs_dir):
        tenant, token = registry.add("team.docs", "Team", str(docs_dir))

        assert registry.get("team.docs") == tenant
        assert registry.get_by_token(token) == tenant

    def test_writes_from_another_instance_are_visible(self, registry, docs_dir):
        other = TenantRegistry(ConfigStore(registry.store.path))
        assert other.list() == []

        tenant, token = registry.add("notes", "Notes", str(docs_dir))

        assert other.get_by_token(token) == tenant

    def test_colliding_tokens_authenticate_nobody(self, store, docs_dir):
        token = generate_token()
        record = {"path": str(docs_dir), "token": token, "created_at": "2026-01-01T00:00:00+00:00"}
        store.set("tenants", {"a": {**record, "label": "a"}, "b": {**record, "label": "b"}})

        assert TenantRegistry(store).get_by_token(token) is None


@pytest.mark.unit
def test_public_dict_omits_token(docs_dir):
    tenant = Tenant(
        label="notes",
        display_name="Notes",
        path=str(docs_dir),
        collection="notes",
        token=generate_token(),
        created_at="2026-01-01T00:00:00+00:00",
    )

    public = tenant.public_dict()

    assert "token" not in public
    assert public["label"] == "notes"
    assert Tenant.from_record(tenant.to_record()) == tenant
