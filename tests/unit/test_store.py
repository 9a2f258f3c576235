"""Tests for the JSON-file config store."""

from __future__ import annotations

import json
import os

import pytest

from qmd_bridge.store import ConfigStore


@pytest.mark.unit
def test_missing_file_reads_as_empty(tmp_path):
    store = ConfigStore(tmp_path / "nope" / "config.json")

    assert store.get("server.port") is None
    assert store.get("server.port", 3333) == 3333
    assert store.as_dict() == {}


@pytest.mark.unit
def test_set_and_get_dotted_paths(store):
    store.set("server.port", 4000)
    store.set("server.host", "0.0.0.0")

    assert store.get("server") == {"port": 4000, "host": "0.0.0.0"}
    assert json.loads(store.path.read_text())["server"]["port"] == 4000


@pytest.mark.unit
def test_get_returns_a_copy(store):
    store.set("tenants", {"a": {"label": "a"}})

    snapshot = store.get("tenants")
    snapshot["a"]["label"] = "mutated"

    assert store.get("tenants.a.label") == "a"


@pytest.mark.unit
def test_delete_reports_whether_key_existed(store):
    store.set("indexing.strategy", "watch")

    assert store.delete("indexing.strategy") is True
    assert store.delete("indexing.strategy") is False
    assert store.delete("missing.key") is False
    assert store.get("indexing") == {}


@pytest.mark.unit
def test_update_applies_mutator_in_one_write(store):
    store.set("tenants", {"a": {"n": 1}})
    before = store.revision

    def mutate(data):
        data["tenants"]["b"] = {"n": 2}
        data["tenants"].pop("a")

    store.update(mutate)

    assert store.get("tenants") == {"b": {"n": 2}}
    assert store.revision[1] == before[1] + 1
    assert not store.path.with_suffix(".json.tmp").exists()


@pytest.mark.unit
def test_second_instance_sees_writes(store):
    other = ConfigStore(store.path)
    store.set("qmd_path", "/usr/local/bin/qmd")

    assert other.get("qmd_path") == "/usr/local/bin/qmd"


@pytest.mark.unit
def test_corrupt_file_reads_as_empty(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")

    assert ConfigStore(path).as_dict() == {}


@pytest.mark.unit
def test_harden_permissions(store):
    store.set("a", 1)
    store.harden_permissions()

    assert store.path.stat().st_mode & 0o777 == 0o600


@pytest.mark.unit
def test_empty_key_rejected(store):
    with pytest.raises(ValueError):
        store.set("", 1)


@pytest.mark.unit
def test_writes_are_owner_only_under_permissive_umask(store):
    previous = os.umask(0o022)
    try:
        store.set("server.port", 4000)
        assert store.path.stat().st_mode & 0o777 == 0o600

        store.path.chmod(0o644)
        store.set("server.port", 4001)
    finally:
        os.umask(previous)

    assert store.path.stat().st_mode & 0o777 == 0o600


@pytest.mark.unit
def test_leftover_temp_file_does_not_widen_mode(store):
    store.path.parent.mkdir(parents=True)
    leftover = store.path.with_suffix(".json.tmp")
    leftover.write_text("{}", encoding="utf-8")
    leftover.chmod(0o666)

    store.set("a", 1)

    assert store.path.stat().st_mode & 0o777 == 0o600
    assert not leftover.exists()
