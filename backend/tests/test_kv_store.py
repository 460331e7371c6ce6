import json

import pytest

from odyssey_engine.errors import QuotaExceededError, StorageError
from odyssey_engine.services.kv_store import (
    FileKeyValueStore,
    FirestoreKeyValueStore,
    InMemoryKeyValueStore,
    build_store,
)


class _FakeSnapshot:
    def __init__(self, payload):
        self._payload = payload
        self.exists = payload is not None

    def to_dict(self):
        return self._payload or {}


class _FakeDocRef:
    def __init__(self, docs, key):
        self._docs = docs
        self._key = key

    def get(self):
        return _FakeSnapshot(self._docs.get(self._key))

    def set(self, payload, merge=False):
        self._docs[self._key] = dict(payload)

    def delete(self):
        self._docs.pop(self._key, None)


class _FakeCollection:
    def __init__(self, docs):
        self._docs = docs

    def document(self, key):
        return _FakeDocRef(self._docs, key)


class _FakeFirestore:
    def __init__(self):
        self.collections = {}

    def collection(self, name):
        return _FakeCollection(self.collections.setdefault(name, {}))


class _BrokenFirestore:
    def collection(self, name):
        raise RuntimeError("firestore unavailable")


def test_memory_store_roundtrip():
    store = InMemoryKeyValueStore()

    assert store.get("missing") is None
    store.set("k", "v")
    assert store.get("k") == "v"
    store.remove("k")
    store.remove("k")
    assert store.get("k") is None


def test_memory_store_quota():
    store = InMemoryKeyValueStore(capacity_bytes=10)

    with pytest.raises(QuotaExceededError):
        store.set("k", "x" * 20)
    assert store.get("k") is None
    assert isinstance(QuotaExceededError("x"), StorageError)


def test_memory_store_quota_counts_overwrites_once():
    store = InMemoryKeyValueStore(capacity_bytes=20)

    store.set("a", "x" * 10)
    store.set("a", "y" * 15)

    assert store.get("a") == "y" * 15
    assert len(store) == 1


def test_file_store_persists_across_instances(tmp_path):
    path = tmp_path / "store.json"

    first = FileKeyValueStore(path)
    first.set("odyssey_save", '{"currentSceneId": 3}')

    second = FileKeyValueStore(path)
    assert second.get("odyssey_save") == '{"currentSceneId": 3}'

    second.remove("odyssey_save")
    assert json.loads(path.read_text(encoding="utf-8")) == {}


def test_file_store_quota_leaves_file_untouched(tmp_path):
    path = tmp_path / "store.json"
    store = FileKeyValueStore(path, capacity_bytes=32)
    store.set("a", "small")

    with pytest.raises(QuotaExceededError):
        store.set("b", "x" * 64)

    assert json.loads(path.read_text(encoding="utf-8")) == {"a": "small"}


def test_file_store_ignores_corrupt_file(tmp_path):
    path = tmp_path / "store.json"
    path.write_text("{not json", encoding="utf-8")

    store = FileKeyValueStore(path)

    assert store.get("anything") is None
    store.set("k", "v")
    assert FileKeyValueStore(path).get("k") == "v"


def test_firestore_store_uses_one_document_per_key():
    client = _FakeFirestore()
    store = FirestoreKeyValueStore(firestore_client=client, collection="odyssey_kv")

    assert store.get("odyssey_save") is None
    store.set("odyssey_save", "payload")

    assert client.collections["odyssey_kv"]["odyssey_save"] == {"value": "payload"}
    assert store.get("odyssey_save") == "payload"

    store.remove("odyssey_save")
    assert store.get("odyssey_save") is None


def test_firestore_store_rejects_oversized_values():
    store = FirestoreKeyValueStore(firestore_client=_FakeFirestore(), collection="kv")

    with pytest.raises(QuotaExceededError):
        store.set("big", "x" * (FirestoreKeyValueStore.MAX_VALUE_BYTES + 1))


def test_firestore_errors_become_storage_errors():
    store = FirestoreKeyValueStore(firestore_client=_BrokenFirestore(), collection="kv")

    with pytest.raises(StorageError, match="unavailable"):
        store.get("k")
    with pytest.raises(StorageError):
        store.set("k", "v")
    with pytest.raises(StorageError):
        store.remove("k")


def test_build_store_selects_backend():
    assert isinstance(build_store("memory"), InMemoryKeyValueStore)
    with pytest.raises(ValueError, match="unknown storage backend"):
        build_store("redis")
