from __future__ import annotations

import json

import pytest

from persistence.backends import DurableBackend, JsonFileBackend, MemoryBackend


def test_memory_backend_contract():
    b = MemoryBackend({"a": "1"})
    assert isinstance(b, DurableBackend)
    assert b.get("a") == "1"
    assert b.get("missing") is None

    b.set("b", "2")
    assert sorted(b.keys()) == ["a", "b"]

    b.remove("a")
    b.remove("a")  # no-op for missing keys
    assert b.keys() == ["b"]

    with pytest.raises(TypeError):
        b.set("c", 3)  # type: ignore[arg-type]


def test_json_file_backend_persists_across_instances(tmp_path):
    path = tmp_path / "nested" / "state.json"
    b1 = JsonFileBackend(path)
    b1.set("satspay_balance", '{"v":1}')
    b1.set("other", "x")
    b1.remove("other")

    assert json.loads(path.read_text(encoding="utf-8")) == {"satspay_balance": '{"v":1}'}

    b2 = JsonFileBackend(path)
    assert b2.get("satspay_balance") == '{"v":1}'
    assert b2.keys() == ["satspay_balance"]
    assert not (tmp_path / "nested" / "state.json.tmp").exists()


def test_json_file_backend_ignores_corrupt_file(tmp_path):
    path = tmp_path / "state.json"
    path.write_text("{not json", encoding="utf-8")

    b = JsonFileBackend(path)
    assert b.keys() == []
    b.set("k", "v")
    assert json.loads(path.read_text(encoding="utf-8")) == {"k": "v"}


def test_json_file_backend_drops_non_string_entries(tmp_path):
    path = tmp_path / "state.json"
    path.write_text(json.dumps({"good": "v", "bad": 3}), encoding="utf-8")

    b = JsonFileBackend(path)
    assert b.keys() == ["good"]
