"""
Durable key-value stores.

String keys, string values. ``set`` may raise ``QuotaExceededError`` when a
store has a finite capacity; callers treat every ``StorageError`` as a
best-effort failure and swallow it.
"""
from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Dict, Optional, Protocol

from google.cloud import firestore

from odyssey_engine.config import settings
from odyssey_engine.errors import QuotaExceededError, StorageError

logger = logging.getLogger(__name__)


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str) -> None: ...

    def remove(self, key: str) -> None: ...


def _entry_size(key: str, value: str) -> int:
    return len(key.encode("utf-8")) + len(value.encode("utf-8"))


class InMemoryKeyValueStore:
    """Process-local store with an optional byte capacity."""

    def __init__(self, capacity_bytes: Optional[int] = None) -> None:
        self._data: Dict[str, str] = {}
        self.capacity_bytes = capacity_bytes

    def _used_without(self, key: str) -> int:
        return sum(_entry_size(k, v) for k, v in self._data.items() if k != key)

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> None:
        if self.capacity_bytes is not None:
            needed = self._used_without(key) + _entry_size(key, value)
            if needed > self.capacity_bytes:
                raise QuotaExceededError(
                    f"store capacity exceeded writing {key!r}: {needed} > {self.capacity_bytes} bytes"
                )
        self._data[key] = value

    def remove(self, key: str) -> None:
        self._data.pop(key, None)

    def __len__(self) -> int:
        return len(self._data)


class FileKeyValueStore(InMemoryKeyValueStore):
    """JSON-file backed store that survives across processes."""

    def __init__(self, path: str | Path, capacity_bytes: Optional[int] = None) -> None:
        super().__init__(capacity_bytes=capacity_bytes)
        self.path = Path(path)
        self._data = self._read()

    def _read(self) -> Dict[str, str]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                payload = json.load(fh)
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("store file unreadable, starting empty: %s (%s)", self.path, exc)
            return {}
        if not isinstance(payload, dict):
            return {}
        return {str(k): str(v) for k, v in payload.items()}

    def _flush(self) -> None:
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with tmp_path.open("w", encoding="utf-8") as fh:
                json.dump(self._data, fh)
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StorageError(f"failed to write store file {self.path}: {exc}") from exc

    def set(self, key: str, value: str) -> None:
        previous = self._data.get(key)
        super().set(key, value)
        try:
            self._flush()
        except StorageError:
            if previous is None:
                self._data.pop(key, None)
            else:
                self._data[key] = previous
            raise

    def remove(self, key: str) -> None:
        if key not in self._data:
            return
        super().remove(key)
        self._flush()


class FirestoreKeyValueStore:
    """Firestore-backed store: one document per key under a collection."""

    # Firestore rejects documents over 1 MiB
    MAX_VALUE_BYTES = 1_000_000

    def __init__(
        self,
        firestore_client: Optional[firestore.Client] = None,
        collection: Optional[str] = None,
    ) -> None:
        self.db = firestore_client or firestore.Client(database=settings.firestore_database)
        self.collection = collection or settings.firestore_collection

    def _doc_ref(self, key: str) -> firestore.DocumentReference:
        return self.db.collection(self.collection).document(key)

    def get(self, key: str) -> Optional[str]:
        try:
            doc = self._doc_ref(key).get()
        except Exception as exc:
            raise StorageError(f"firestore read failed for {key!r}: {exc}") from exc
        if not doc.exists:
            return None
        data = doc.to_dict() or {}
        value = data.get("value")
        return value if isinstance(value, str) else None

    def set(self, key: str, value: str) -> None:
        if len(value.encode("utf-8")) > self.MAX_VALUE_BYTES:
            raise QuotaExceededError(f"value for {key!r} exceeds the firestore document limit")
        try:
            self._doc_ref(key).set({"value": value})
        except Exception as exc:
            raise StorageError(f"firestore write failed for {key!r}: {exc}") from exc

    def remove(self, key: str) -> None:
        try:
            self._doc_ref(key).delete()
        except Exception as exc:
            raise StorageError(f"firestore delete failed for {key!r}: {exc}") from exc


def build_store(backend: Optional[str] = None) -> KeyValueStore:
    """Create the durable store selected by configuration."""
    backend = backend or settings.storage_backend
    if backend == "memory":
        return InMemoryKeyValueStore(capacity_bytes=settings.storage_capacity_bytes)
    if backend == "file":
        return FileKeyValueStore(settings.storage_path, capacity_bytes=settings.storage_capacity_bytes)
    if backend == "firestore":
        return FirestoreKeyValueStore()
    raise ValueError(f"unknown storage backend: {backend}")
