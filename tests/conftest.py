"""Shared test fixtures."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from pathlib import Path

import pytest

from burstpool.store import InMemoryObjectStore, RetryPolicy, SqliteObjectStore

START = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)


class FakeClock:
    """Deterministic clock: ``sleep`` advances time instead of blocking."""

    def __init__(self, start: datetime = START) -> None:
        self._now = start
        self._monotonic = 0.0
        self._lock = threading.Lock()
        self.sleeps: list[float] = []

    def now(self) -> datetime:
        with self._lock:
            return self._now

    def monotonic(self) -> float:
        with self._lock:
            return self._monotonic

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.advance(seconds)

    def advance(self, seconds: float) -> None:
        with self._lock:
            self._now += timedelta(seconds=seconds)
            self._monotonic += seconds


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def memory_store() -> InMemoryObjectStore:
    return InMemoryObjectStore()


@pytest.fixture()
def sqlite_store(tmp_path: Path):
    store = SqliteObjectStore(tmp_path / "store.db")
    store.init_schema()
    yield store
    store.close()


@pytest.fixture()
def fast_retry() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_seconds=0.01, max_delay_seconds=0.05)
