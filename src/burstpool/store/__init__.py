"""Object store adapters used as the only shared mutable state."""

from __future__ import annotations

from burstpool.config import StoreSettings
from burstpool.store.base import (
    ObjectStore,
    PutResult,
    RetryPolicy,
    StoredObject,
    call_with_retry,
)
from burstpool.store.http import HttpObjectStore
from burstpool.store.memory import InMemoryObjectStore
from burstpool.store.sqlite import SqliteObjectStore

__all__ = [
    "HttpObjectStore",
    "InMemoryObjectStore",
    "ObjectStore",
    "PutResult",
    "RetryPolicy",
    "SqliteObjectStore",
    "StoredObject",
    "call_with_retry",
    "open_store",
]


def open_store(settings: StoreSettings) -> ObjectStore:
    """Build the store selected by configuration, running migrations where needed."""

    if settings.backend == "sqlite":
        store = SqliteObjectStore(settings.path, busy_timeout_ms=settings.busy_timeout_ms)
        store.init_schema()
        return store
    if settings.backend == "http":
        return HttpObjectStore(
            endpoint=settings.endpoint,
            bucket=settings.bucket,
            auth_token=settings.auth_token,
            timeout_seconds=settings.request_timeout_seconds,
        )
    if settings.backend == "memory":
        return InMemoryObjectStore()
    raise ValueError(f"Unsupported store backend: {settings.backend!r}")
