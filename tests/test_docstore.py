"""Document store backends."""

import pytest

from snaptrail.docstore import JsonFileDocumentStore, MemoryDocumentStore, SqliteDocumentStore


@pytest.fixture(params=["memory", "json", "sqlite"])
def store(request, tmp_path):
    if request.param == "memory":
        s = MemoryDocumentStore()
    elif request.param == "json":
        s = JsonFileDocumentStore(tmp_path / "index.json")
    else:
        s = SqliteDocumentStore(tmp_path / "index.db")
    yield s
    s.close()


class TestDocumentStores:
    def test_empty_store_loads_none(self, store):
        assert store.load() is None

    def test_save_then_load(self, store):
        doc = {"version": "1.0", "snapshots": [{"id": "a"}], "by_file": {"f": ["a"]}}
        store.save(doc)
        assert store.load() == doc

    def test_save_replaces(self, store):
        store.save({"n": 1})
        store.save({"n": 2})
        assert store.load() == {"n": 2}

    def test_loaded_copy_is_detached(self, store):
        store.save({"items": [1, 2]})
        loaded = store.load()
        loaded["items"].append(3)
        assert store.load() == {"items": [1, 2]}

    def test_unserializable_document_rejected(self, store):
        with pytest.raises(TypeError):
            store.save({"bad": object()})


class TestJsonFileStore:
    def test_persists_across_instances(self, tmp_path):
        path = tmp_path / "index.json"
        JsonFileDocumentStore(path).save({"version": "1.0"})
        assert JsonFileDocumentStore(path).load() == {"version": "1.0"}

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "index.json"
        path.write_text("{not json")
        with pytest.raises(ValueError, match="Corrupt index document"):
            JsonFileDocumentStore(path).load()

    def test_blank_file_is_empty(self, tmp_path):
        path = tmp_path / "index.json"
        path.write_text("  \n")
        assert JsonFileDocumentStore(path).load() is None

    def test_no_temp_files_left_behind(self, tmp_path):
        store = JsonFileDocumentStore(tmp_path / "index.json")
        for i in range(5):
            store.save({"n": i})
        assert [p.name for p in tmp_path.iterdir()] == ["index.json"]


class TestSqliteStore:
    def test_persists_across_connections(self, tmp_path):
        s1 = SqliteDocumentStore(tmp_path / "index.db")
        s1.save({"version": "1.0"})
        s1.close()
        with SqliteDocumentStore(tmp_path / "index.db") as s2:
            assert s2.load() == {"version": "1.0"}

    def test_keys_are_independent(self, tmp_path):
        with SqliteDocumentStore(tmp_path / "index.db", key="a") as a:
            a.save({"k": "a"})
        with SqliteDocumentStore(tmp_path / "index.db", key="b") as b:
            assert b.load() is None

    def test_close_is_idempotent(self, tmp_path):
        s = SqliteDocumentStore(tmp_path / "index.db")
        s.close()
        s.close()
