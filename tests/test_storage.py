from pathlib import Path

import pytest

from chathub.storage import JsonFileStore, MemoryStore


def test_json_file_store_round_trip(tmp_path: Path):
    store = JsonFileStore(tmp_path / "data")
    store.set("preferences", {"temperature": 0.5})

    assert store.get("preferences") == {"temperature": 0.5}
    assert store.get("missing", []) == []
    assert not list((tmp_path / "data").glob("*.tmp"))


def test_json_file_store_rejects_path_keys(tmp_path: Path):
    store = JsonFileStore(tmp_path)
    with pytest.raises(ValueError):
        store.set("../escape", {})


def test_corrupt_json_reads_as_default(tmp_path: Path):
    (tmp_path / "chat-sessions.json").write_text("{not json", encoding="utf-8")
    assert JsonFileStore(tmp_path).get("chat-sessions", []) == []


def test_memory_store_isolates_values():
    store = MemoryStore()
    value = {"memories": ["a"]}
    store.set("preferences", value)
    value["memories"].append("b")

    loaded = store.get("preferences")
    loaded["memories"].append("c")

    assert store.get("preferences") == {"memories": ["a"]}
