from __future__ import annotations

import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest

from burstpool.coordination import keys
from burstpool.coordination.models import BackendConfig, Manifest, TaskError, TaskState
from burstpool.coordination.protocol import (
    ClaimOutcome,
    CoordinationProtocol,
    list_session_ids,
    resolve_bootstrap,
)
from burstpool.errors import (
    BootstrapNotFoundError,
    ManifestConflictError,
    SessionNotFoundError,
    StoreUnavailableError,
)
from burstpool.store import InMemoryObjectStore, PutResult, SqliteObjectStore

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Atomic Claim Protocol"),
]


def _protocol(store, clock, session_id: str = "session-1") -> CoordinationProtocol:
    protocol = CoordinationProtocol(store, session_id, clock=clock)
    now = clock.now()
    protocol.create_manifest(
        Manifest(
            session_id=session_id,
            created_at=now,
            last_activity=now,
            absolute_timeout=now + timedelta(hours=1),
            backend=BackendConfig(workers=1),
        ),
    )
    return protocol


class ConflictingStore(InMemoryObjectStore):
    """Rejects the first ``conflicts`` conditional updates of manifests."""

    def __init__(self, conflicts: int) -> None:
        super().__init__()
        self.conflicts = conflicts

    def put_if_match(self, key: str, body: bytes, version: str | None) -> PutResult:
        if version is not None and key.endswith("/manifest") and self.conflicts > 0:
            self.conflicts -= 1
            return PutResult(ok=False)
        return super().put_if_match(key, body, version)


class LostResponseStore(InMemoryObjectStore):
    """Applies each write to a key ending in one of ``suffixes``, then times out once."""

    def __init__(self, *suffixes: str) -> None:
        super().__init__()
        self.suffixes = suffixes
        self.lost: list[tuple[str, bytes]] = []

    def put_if_match(self, key: str, body: bytes, version: str | None) -> PutResult:
        put = super().put_if_match(key, body, version)
        if put.ok and key.endswith(self.suffixes) and (key, body) not in self.lost:
            self.lost.append((key, body))
            raise StoreUnavailableError(f"connection reset after writing {key}")
        return put


def test_claim_outcomes(memory_store, clock) -> None:
    protocol = _protocol(memory_store, clock)
    protocol.create_task("task-a", b"{}")

    assert protocol.claim("task-missing", "w1") is ClaimOutcome.MISSING
    assert protocol.claim("task-a", "w1") is ClaimOutcome.CLAIMED
    assert protocol.claim("task-a", "w2") is ClaimOutcome.NOT_PENDING
    record = protocol.read_task("task-a").record
    assert record.state is TaskState.CLAIMED
    assert record.owner == "w1"


def test_claim_conflict_when_record_changes_between_read_and_write(memory_store, clock) -> None:
    protocol = _protocol(memory_store, clock)
    protocol.create_task("task-a", b"{}")
    rival = CoordinationProtocol(memory_store, "session-1", clock=clock)
    original_read = protocol.read_task

    def _read_then_lose_race(task_id: str):
        seen = original_read(task_id)
        assert rival.claim(task_id, "rival") is ClaimOutcome.CLAIMED
        return seen

    protocol.read_task = _read_then_lose_race  # type: ignore[method-assign]

    assert protocol.claim("task-a", "w1") is ClaimOutcome.CONFLICT
    assert original_read("task-a").record.owner == "rival"


def test_racing_claims_have_exactly_one_winner(tmp_path: Path, clock) -> None:
    db_path = tmp_path / "race.db"
    setup_store = SqliteObjectStore(db_path)
    setup_store.init_schema()
    protocol = _protocol(setup_store, clock)
    for index in range(5):
        protocol.create_task(f"task-{index}", b"{}")

    racers = 8
    barrier = threading.Barrier(racers)
    outcomes: dict[str, list[ClaimOutcome]] = {f"task-{index}": [] for index in range(5)}
    lock = threading.Lock()

    def _race(worker_index: int) -> None:
        store = SqliteObjectStore(db_path, busy_timeout_ms=30_000)
        racer = CoordinationProtocol(store, "session-1", clock=clock)
        barrier.wait()
        for task_id in outcomes:
            outcome = racer.claim(task_id, f"w{worker_index}")
            with lock:
                outcomes[task_id].append(outcome)
        store.close()

    threads = [threading.Thread(target=_race, args=(index,)) for index in range(racers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    for task_id, results in outcomes.items():
        assert results.count(ClaimOutcome.CLAIMED) == 1, task_id
        owner = protocol.read_task(task_id).record.owner
        assert owner is not None
    setup_store.close()


def test_only_owner_can_advance_claimed_task(memory_store, clock) -> None:
    protocol = _protocol(memory_store, clock)
    protocol.create_task("task-a", b"{}")
    protocol.claim("task-a", "owner")

    assert protocol.mark_running("task-a", "intruder") is None
    assert protocol.mark_running("task-a", "owner").state is TaskState.RUNNING
    assert protocol.complete("task-a", "intruder", b"1") is None
    completed = protocol.complete("task-a", "owner", b"42")
    assert completed.state is TaskState.COMPLETED
    assert protocol.read_result(completed) == b"42"
    assert protocol.fail("task-a", "owner", TaskError("X", "late")) is None
    assert protocol.read_task("task-a").record.state is TaskState.COMPLETED


def test_pending_scan_is_bounded_and_skips_bootstrap(memory_store, clock) -> None:
    protocol = _protocol(memory_store, clock)
    bootstrap_id = protocol.create_bootstrap(0)
    for index in range(4):
        protocol.create_task(f"task-{index}", b"{}")
    protocol.claim("task-0", "w")

    assert protocol.list_pending(limit=2) == ["task-1", "task-2"]
    assert protocol.list_pending(limit=10) == ["task-1", "task-2", "task-3"]
    assert bootstrap_id not in protocol.list_task_ids()
    assert bootstrap_id in protocol.list_task_ids(include_bootstrap=True)
    bootstrap = protocol.read_task(bootstrap_id).record
    assert bootstrap.bootstrap
    assert bootstrap.state is TaskState.CLAIMED
    assert protocol.claim(bootstrap_id, "w") is ClaimOutcome.NOT_PENDING


def test_resolve_bootstrap_points_at_session(memory_store, clock) -> None:
    protocol = _protocol(memory_store, clock, session_id="session-xyz")
    bootstrap_id = protocol.create_bootstrap(3)

    assert bootstrap_id == "bootstrap-session-xyz.3"
    assert resolve_bootstrap(memory_store, bootstrap_id) == "session-xyz"
    with pytest.raises(BootstrapNotFoundError):
        resolve_bootstrap(memory_store, "bootstrap-unknown-0")


def test_manifest_update_retries_after_conflict(clock) -> None:
    store = ConflictingStore(conflicts=2)
    protocol = _protocol(store, clock)

    manifest = protocol.update_manifest(lambda current: setattr(current.stats, "total", 7))

    assert manifest.stats.total == 7
    assert protocol.read_manifest().manifest.stats.total == 7
    assert len(clock.sleeps) == 2


def test_manifest_update_gives_up_after_max_attempts(clock) -> None:
    store = ConflictingStore(conflicts=100)
    protocol = _protocol(store, clock)
    protocol.manifest_attempts = 3

    with pytest.raises(ManifestConflictError):
        protocol.update_manifest(lambda current: None)


def test_concurrent_manifest_increments_are_not_lost(memory_store, clock) -> None:
    _protocol(memory_store, clock)
    writers = 6
    increments = 5

    def _bump() -> None:
        protocol = CoordinationProtocol(memory_store, "session-1", clock=clock)
        protocol.manifest_attempts = 1_000
        for _ in range(increments):
            protocol.update_manifest(
                lambda current: setattr(current.stats, "total", current.stats.total + 1),
            )

    threads = [threading.Thread(target=_bump) for _ in range(writers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    reader = CoordinationProtocol(memory_store, "session-1", clock=clock)
    assert reader.read_manifest().manifest.stats.total == writers * increments


def test_read_manifest_of_unknown_session(memory_store, clock) -> None:
    with pytest.raises(SessionNotFoundError):
        CoordinationProtocol(memory_store, "session-none", clock=clock).read_manifest()


def test_delete_session_data_removes_only_that_session(memory_store, clock) -> None:
    first = _protocol(memory_store, clock, session_id="session-1")
    second = _protocol(memory_store, clock, session_id="session-2")
    first.create_bootstrap(0)
    first.create_task("task-a", b"{}")
    second.create_bootstrap(0)
    second.create_task("task-b", b"{}")

    deleted = first.delete_session_data()

    assert deleted == 5
    assert memory_store.list_keys(keys.session_prefix("session-1")) == []
    assert memory_store.list_keys(keys.session_bootstrap_prefix("session-1")) == []
    assert list_session_ids(memory_store) == ["session-2"]
    assert second.list_task_ids() == ["task-b"]


def test_writes_applied_before_a_lost_response_count_as_done(clock, fast_retry) -> None:
    store = LostResponseStore("/payload", "/status", "/result")
    _protocol(store, clock)
    protocol = CoordinationProtocol(store, "session-1", clock=clock, retry=fast_retry)

    protocol.create_task("task-a", b"{}")

    assert protocol.claim("task-a", "w1") is ClaimOutcome.CLAIMED
    assert protocol.mark_running("task-a", "w1").state is TaskState.RUNNING
    completed = protocol.complete("task-a", "w1", b"42")
    assert completed.state is TaskState.COMPLETED
    assert protocol.read_result(completed) == b"42"
    record = protocol.read_task("task-a").record
    assert (record.state, record.owner) == (TaskState.COMPLETED, "w1")
    assert len(store.lost) == 6


def test_lost_claim_response_does_not_hide_a_rival_winner(clock, fast_retry) -> None:
    store = InMemoryObjectStore()
    protocol = CoordinationProtocol(store, "session-1", clock=clock, retry=fast_retry)
    _protocol(store, clock).create_task("task-a", b"{}")
    rival = CoordinationProtocol(store, "session-1", clock=clock)
    original_put = store.put_if_match
    calls: list[str] = []

    def _rival_wins_during_timeout(key: str, body: bytes, version: str | None) -> PutResult:
        calls.append(key)
        if len(calls) == 1:
            assert rival.claim("task-a", "rival") is ClaimOutcome.CLAIMED
            raise StoreUnavailableError("timed out")
        return original_put(key, body, version)

    store.put_if_match = _rival_wins_during_timeout  # type: ignore[method-assign]

    assert protocol.claim("task-a", "w1") is ClaimOutcome.CONFLICT
    assert protocol.read_task("task-a").record.owner == "rival"


@pytest.mark.parametrize("session_id", ["", "s.1", "a/b", "space id"])
def test_session_ids_are_restricted_to_key_safe_characters(memory_store, clock, session_id) -> None:
    with pytest.raises(ValueError, match="Invalid session id"):
        CoordinationProtocol(memory_store, session_id, clock=clock)


def test_deleting_a_session_keeps_bootstraps_of_sessions_sharing_its_prefix(memory_store, clock) -> None:
    short = _protocol(memory_store, clock, session_id="s")
    longer = _protocol(memory_store, clock, session_id="s-x")
    short.create_bootstrap(0)
    kept = longer.create_bootstrap(0)

    short.delete_session_data()

    assert memory_store.list_keys(keys.session_bootstrap_prefix("s")) == []
    assert resolve_bootstrap(memory_store, kept) == "s-x"
    assert list_session_ids(memory_store) == ["s-x"]
