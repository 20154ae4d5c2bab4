"""Process-local object store with the same conditional-write semantics."""

from __future__ import annotations

import itertools
import threading

from burstpool.store.base import PutResult, StoredObject


class InMemoryObjectStore:
    """Thread-safe dict-backed store; versions are monotonically increasing tokens."""

    def __init__(self) -> None:
        self._objects: dict[str, StoredObject] = {}
        self._lock = threading.Lock()
        self._versions = itertools.count(1)

    def get(self, key: str) -> StoredObject | None:
        with self._lock:
            return self._objects.get(key)

    def put_if_match(self, key: str, body: bytes, version: str | None) -> PutResult:
        with self._lock:
            current = self._objects.get(key)
            if version is None:
                if current is not None:
                    return PutResult(ok=False)
            elif current is None or current.version != version:
                return PutResult(ok=False)
            stored = StoredObject(body=bytes(body), version=f"v{next(self._versions)}")
            self._objects[key] = stored
            return PutResult(ok=True, version=stored.version)

    def list_keys(self, prefix: str, limit: int | None = None) -> list[str]:
        with self._lock:
            keys = sorted(key for key in self._objects if key.startswith(prefix))
        if limit is not None:
            return keys[:limit]
        return keys

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._objects.pop(key, None) is not None

    def close(self) -> None:
        return None
