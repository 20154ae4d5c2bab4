from __future__ import annotations

import sqlite3
from pathlib import Path

import allure
import pytest

from burstpool.config import StoreSettings
from burstpool.errors import StoreUnavailableError
from burstpool.store import (
    InMemoryObjectStore,
    RetryPolicy,
    SqliteObjectStore,
    call_with_retry,
    open_store,
)
from burstpool.store.alembic_runner import current_revision, upgrade_head

pytestmark = [
    allure.epic("State Store"),
    allure.feature("Conditional Writes"),
]


@pytest.fixture(params=["memory", "sqlite"])
def store(request, tmp_path: Path):
    if request.param == "memory":
        yield InMemoryObjectStore()
        return
    sqlite_store = SqliteObjectStore(tmp_path / "objects.db")
    sqlite_store.init_schema()
    yield sqlite_store
    sqlite_store.close()


def test_create_only_put_refuses_existing_key(store) -> None:
    first = store.put_if_match("sessions/a/manifest", b"one", None)
    second = store.put_if_match("sessions/a/manifest", b"two", None)

    assert first.ok
    assert first.version
    assert not second.ok
    assert store.get("sessions/a/manifest").body == b"one"


def test_put_with_stale_version_is_rejected(store) -> None:
    created = store.put_if_match("k", b"v1", None)
    updated = store.put_if_match("k", b"v2", created.version)
    stale = store.put_if_match("k", b"v3", created.version)

    assert updated.ok
    assert updated.version != created.version
    assert not stale.ok
    stored = store.get("k")
    assert stored.body == b"v2"
    assert stored.version == updated.version


def test_put_with_version_on_missing_key_is_rejected(store) -> None:
    assert not store.put_if_match("missing", b"x", "some-version").ok
    assert store.get("missing") is None


def test_list_keys_filters_by_prefix_in_key_order(store) -> None:
    for key in ("sessions/b/tasks/2", "sessions/b/tasks/1", "sessions/b_x/manifest", "other"):
        store.put_if_match(key, b"x", None)

    assert store.list_keys("sessions/b/") == ["sessions/b/tasks/1", "sessions/b/tasks/2"]
    assert store.list_keys("sessions/b/", limit=1) == ["sessions/b/tasks/1"]
    assert store.list_keys("nothing/") == []


def test_delete_reports_whether_object_existed(store) -> None:
    store.put_if_match("k", b"x", None)

    assert store.delete("k") is True
    assert store.delete("k") is False
    assert store.get("k") is None
    assert store.put_if_match("k", b"again", None).ok


def test_sqlite_schema_is_migrated_to_head(tmp_path: Path) -> None:
    db_path = tmp_path / "migrated.db"
    store = SqliteObjectStore(db_path)
    store.init_schema()
    store.close()

    connection = sqlite3.connect(db_path)
    try:
        version = connection.execute("SELECT version_num FROM alembic_version").fetchone()
        tables = {
            row[0]
            for row in connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
    finally:
        connection.close()
    assert version == ("20261018_0001",)
    assert "store_objects" in tables


def test_migration_runner_reports_revision_and_is_idempotent(tmp_path: Path) -> None:
    db_path = tmp_path / "revision.db"

    assert current_revision(db_path) is None
    assert upgrade_head(db_path) == "20261018_0001"
    assert upgrade_head(db_path) == "20261018_0001"
    assert current_revision(db_path) == "20261018_0001"


def test_sqlite_store_is_shared_between_handles(tmp_path: Path) -> None:
    db_path = tmp_path / "shared.db"
    writer = open_store(StoreSettings(backend="sqlite", path=db_path))
    reader = open_store(StoreSettings(backend="sqlite", path=db_path))
    try:
        put = writer.put_if_match("k", b"payload", None)
        stored = reader.get("k")
        assert stored is not None
        assert stored.version == put.version
        assert not reader.put_if_match("k", b"other", None).ok
    finally:
        writer.close()
        reader.close()


def test_open_store_rejects_unknown_backend() -> None:
    with pytest.raises(ValueError, match="Unsupported store backend"):
        open_store(StoreSettings(backend="ftp"))


def test_call_with_retry_retries_transient_faults(clock) -> None:
    attempts = []

    def flaky() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise StoreUnavailableError("busy", operation="get")
        return "ok"

    result = call_with_retry(flaky, policy=RetryPolicy(max_attempts=3), clock=clock)

    assert result == "ok"
    assert len(attempts) == 3
    assert len(clock.sleeps) == 2
    assert 1.0 <= clock.sleeps[0] <= 1.1
    assert 2.0 <= clock.sleeps[1] <= 2.2


def test_call_with_retry_gives_up_after_max_attempts(clock) -> None:
    def always_down() -> None:
        raise StoreUnavailableError("down")

    with pytest.raises(StoreUnavailableError, match="down"):
        call_with_retry(always_down, policy=RetryPolicy(max_attempts=2), clock=clock)
    assert len(clock.sleeps) == 1


def test_retry_delay_is_capped_with_bounded_jitter() -> None:
    policy = RetryPolicy(max_attempts=10, base_delay_seconds=1.0, max_delay_seconds=60.0)

    for attempt in range(1, 10):
        delay = policy.delay_for(attempt)
        base = min(2 ** (attempt - 1), 60.0)
        assert base <= delay <= base * 1.1
