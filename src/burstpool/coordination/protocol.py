"""Manifest and task-record protocol built on conditional object writes."""

from __future__ import annotations

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, TypeVar

from burstpool.clock import Clock, SystemClock, to_iso
from burstpool.coordination import keys
from burstpool.coordination.models import (
    ALLOWED_TRANSITIONS,
    Manifest,
    TaskError,
    TaskRecord,
    TaskState,
)
from burstpool.coordination.serializers import JsonSerializer
from burstpool.errors import (
    BootstrapNotFoundError,
    BurstpoolError,
    ManifestConflictError,
    SessionNotFoundError,
)
from burstpool.store.base import ObjectStore, PutResult, RetryPolicy, StoredObject, call_with_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_RECORD_CODEC = JsonSerializer()
DEFAULT_MANIFEST_ATTEMPTS = 5


class ClaimOutcome(str, Enum):
    """Result of one claim attempt."""

    CLAIMED = "claimed"
    CONFLICT = "conflict"
    NOT_PENDING = "not_pending"
    MISSING = "missing"


@dataclass(slots=True, frozen=True)
class VersionedTask:
    record: TaskRecord
    version: str


@dataclass(slots=True, frozen=True)
class VersionedManifest:
    manifest: Manifest
    version: str


class CoordinationProtocol:
    """Session-scoped reads and conditional writes of manifest and task records.

    Every mutation of an existing record is a ``put_if_match`` keyed on the
    version returned by the read that preceded it; nothing is ever written
    unconditionally.
    """

    def __init__(
        self,
        store: ObjectStore,
        session_id: str,
        *,
        clock: Clock | None = None,
        retry: RetryPolicy | None = None,
        manifest_attempts: int = DEFAULT_MANIFEST_ATTEMPTS,
    ) -> None:
        self.store = store
        self.session_id = keys.validate_session_id(session_id)
        self.clock = clock or SystemClock()
        self.retry = retry or RetryPolicy()
        self.manifest_attempts = manifest_attempts
        self._random = random.Random()  # noqa: S311
        # pending -> claimed is the only way out of pending and is never undone,
        # so any id seen outside pending can be skipped by later scans.
        self._not_pending: set[str] = set()

    # -- manifest ---------------------------------------------------------

    def create_manifest(self, manifest: Manifest) -> str:
        put = self._put(
            keys.manifest_key(self.session_id),
            _RECORD_CODEC.encode(manifest.to_dict()),
            None,
        )
        if not put.ok:
            raise BurstpoolError(f"Session already exists: {self.session_id}")
        return put.version or ""

    def read_manifest(self) -> VersionedManifest:
        stored = self._get(keys.manifest_key(self.session_id))
        if stored is None:
            raise SessionNotFoundError(self.session_id)
        return VersionedManifest(
            manifest=Manifest.from_dict(_RECORD_CODEC.decode(stored.body)),
            version=stored.version,
        )

    def update_manifest(
        self,
        mutator: Callable[[Manifest], None],
        *,
        attempts: int | None = None,
    ) -> Manifest:
        """Apply ``mutator`` with read-modify-conditional-write, re-reading on conflict."""

        key = keys.manifest_key(self.session_id)
        max_attempts = attempts or self.manifest_attempts
        for attempt in range(1, max_attempts + 1):
            current = self.read_manifest()
            manifest = current.manifest
            mutator(manifest)
            manifest.last_activity = self.clock.now()
            put = self._put(key, _RECORD_CODEC.encode(manifest.to_dict()), current.version)
            if put.ok:
                return manifest
            if attempt < max_attempts:
                delay = self._random.uniform(0.1, 0.5) * (2 ** (attempt - 1))
                logger.warning(
                    "Concurrent manifest update for %s (attempt %d/%d), retrying in %.2fs",
                    self.session_id,
                    attempt,
                    max_attempts,
                    delay,
                )
                self.clock.sleep(delay)
        raise ManifestConflictError(
            f"Failed to update manifest of {self.session_id} after "
            f"{max_attempts} attempts due to concurrent modifications",
        )

    # -- task records -----------------------------------------------------

    def create_task(self, task_id: str, payload: bytes) -> TaskRecord:
        """Write payload then a ``pending`` status record; both create-only."""

        payload_key = keys.task_payload_key(self.session_id, task_id)
        if not self._put(payload_key, payload, None).ok:
            raise BurstpoolError(f"Task payload already exists: {task_id}")
        record = TaskRecord(
            task_id=task_id,
            session_id=self.session_id,
            state=TaskState.PENDING,
            created_at=self.clock.now(),
            payload_key=payload_key,
        )
        self._write_new_record(record)
        return record

    def create_bootstrap(self, index: int) -> str:
        """Write the pointer a new worker resolves, plus its excluded status record."""

        bootstrap_id = keys.bootstrap_task_id(self.session_id, index)
        now = self.clock.now()
        pointer = {
            "bootstrap_task_id": bootstrap_id,
            "session_id": self.session_id,
            "created_at": to_iso(now),
        }
        if not self._put(keys.bootstrap_key(bootstrap_id), _RECORD_CODEC.encode(pointer), None).ok:
            raise BurstpoolError(f"Bootstrap task already exists: {bootstrap_id}")
        self._write_new_record(
            TaskRecord(
                task_id=bootstrap_id,
                session_id=self.session_id,
                state=TaskState.CLAIMED,
                created_at=now,
                owner=bootstrap_id,
                claimed_at=now,
                bootstrap=True,
            ),
        )
        return bootstrap_id

    def read_task(self, task_id: str) -> VersionedTask | None:
        stored = self._get(keys.task_status_key(self.session_id, task_id))
        if stored is None:
            return None
        return VersionedTask(record=_decode_record(stored), version=stored.version)

    def list_task_ids(self, *, include_bootstrap: bool = False) -> list[str]:
        task_ids: list[str] = []
        for key in self._list(keys.tasks_prefix(self.session_id)):
            task_id = keys.task_id_from_status_key(self.session_id, key)
            if task_id is None:
                continue
            if not include_bootstrap and keys.is_bootstrap_task_id(task_id):
                continue
            task_ids.append(task_id)
        return task_ids

    def list_records(self, *, include_bootstrap: bool = False) -> list[TaskRecord]:
        records: list[TaskRecord] = []
        for task_id in self.list_task_ids(include_bootstrap=include_bootstrap):
            current = self.read_task(task_id)
            if current is None:
                continue
            if current.record.bootstrap and not include_bootstrap:
                continue
            records.append(current.record)
        return records

    def list_pending(self, limit: int) -> list[str]:
        """Bounded scan for pending task ids, in key order."""

        pending: list[str] = []
        for task_id in self.list_task_ids():
            if len(pending) >= limit:
                break
            if task_id in self._not_pending:
                continue
            current = self.read_task(task_id)
            if current is None:
                continue
            if current.record.state is TaskState.PENDING and not current.record.bootstrap:
                pending.append(task_id)
            else:
                self._not_pending.add(task_id)
        return pending

    def claim(self, task_id: str, worker_id: str) -> ClaimOutcome:
        """Atomically move a pending task to ``claimed`` owned by ``worker_id``."""

        current = self.read_task(task_id)
        if current is None:
            return ClaimOutcome.MISSING
        if current.record.state is not TaskState.PENDING or current.record.bootstrap:
            self._not_pending.add(task_id)
            return ClaimOutcome.NOT_PENDING
        claimed = current.record.transition(
            TaskState.CLAIMED,
            at=self.clock.now(),
            owner=worker_id,
        )
        put = self._put(
            keys.task_status_key(self.session_id, task_id),
            _RECORD_CODEC.encode(claimed.to_dict()),
            current.version,
        )
        self._not_pending.add(task_id)
        if not put.ok:
            logger.debug("Claim conflict on %s for worker %s", task_id, worker_id)
            return ClaimOutcome.CONFLICT
        logger.info("Task %s claimed by %s", task_id, worker_id)
        return ClaimOutcome.CLAIMED

    def mark_running(self, task_id: str, worker_id: str) -> TaskRecord | None:
        return self._owned_transition(task_id, worker_id, TaskState.RUNNING)

    def complete(self, task_id: str, worker_id: str, result: bytes) -> TaskRecord | None:
        """Store the result object, then move the owned record to ``completed``."""

        current = self.read_task(task_id)
        if (
            current is None
            or current.record.owner != worker_id
            or current.record.state is not TaskState.RUNNING
        ):
            logger.warning("Worker %s may not complete %s; result discarded", worker_id, task_id)
            return None
        result_key = keys.task_result_key(self.session_id, task_id)
        if not self._put(result_key, result, None).ok:
            logger.warning("Result for %s already stored; keeping the existing object", task_id)
        return self._owned_transition(
            task_id,
            worker_id,
            TaskState.COMPLETED,
            result_key=result_key,
        )

    def fail(self, task_id: str, worker_id: str, error: TaskError) -> TaskRecord | None:
        return self._owned_transition(task_id, worker_id, TaskState.FAILED, error=error)

    def read_payload(self, record: TaskRecord) -> bytes:
        key = record.payload_key or keys.task_payload_key(self.session_id, record.task_id)
        stored = self._get(key)
        if stored is None:
            raise BurstpoolError(f"Payload missing for task {record.task_id}")
        return stored.body

    def read_result(self, record: TaskRecord) -> bytes | None:
        if record.result_key is None:
            return None
        stored = self._get(record.result_key)
        return stored.body if stored is not None else None

    def delete_session_data(self) -> int:
        """Delete every object under the session prefix and its bootstrap pointers."""

        deleted = 0
        for prefix in (
            keys.tasks_prefix(self.session_id),
            keys.session_bootstrap_prefix(self.session_id),
            keys.session_prefix(self.session_id),
        ):
            for key in self._list(prefix):
                if self._retry_call(lambda key=key: self.store.delete(key), f"delete {key}"):
                    deleted += 1
        return deleted

    # -- internals --------------------------------------------------------

    def _owned_transition(
        self,
        task_id: str,
        worker_id: str,
        state_to: TaskState,
        **changes: Any,
    ) -> TaskRecord | None:
        current = self.read_task(task_id)
        if current is None:
            logger.warning("Task %s vanished before %s", task_id, state_to.value)
            return None
        record = current.record
        if record.owner != worker_id:
            logger.warning(
                "Task %s is owned by %s, not %s; refusing %s",
                task_id,
                record.owner,
                worker_id,
                state_to.value,
            )
            return None
        if state_to not in ALLOWED_TRANSITIONS[record.state]:
            logger.warning(
                "Task %s cannot move %s -> %s",
                task_id,
                record.state.value,
                state_to.value,
            )
            return None
        updated = record.transition(state_to, at=self.clock.now(), **changes)
        put = self._put(
            keys.task_status_key(self.session_id, task_id),
            _RECORD_CODEC.encode(updated.to_dict()),
            current.version,
        )
        if not put.ok:
            logger.warning("Lost conditional write moving %s to %s", task_id, state_to.value)
            return None
        return updated

    def _write_new_record(self, record: TaskRecord) -> None:
        put = self._put(
            keys.task_status_key(self.session_id, record.task_id),
            _RECORD_CODEC.encode(record.to_dict()),
            None,
        )
        if not put.ok:
            raise BurstpoolError(f"Task record already exists: {record.task_id}")

    def _get(self, key: str) -> StoredObject | None:
        return self._retry_call(lambda: self.store.get(key), f"get {key}")

    def _put(self, key: str, body: bytes, version: str | None) -> PutResult:
        """Conditional put that survives a lost response to an applied write.

        When a retried attempt reports a failed precondition, the object is
        re-read: if it holds exactly ``body``, an earlier attempt wrote it.
        """

        attempts = 0

        def _attempt() -> PutResult:
            nonlocal attempts
            attempts += 1
            return self.store.put_if_match(key, body, version)

        put = self._retry_call(_attempt, f"put {key}")
        if put.ok or attempts == 1:
            return put
        stored = self._get(key)
        if stored is not None and stored.body == body:
            logger.info("Write to %s was applied by an attempt whose response was lost", key)
            return PutResult(ok=True, version=stored.version)
        return put

    def _list(self, prefix: str) -> list[str]:
        return self._retry_call(lambda: self.store.list_keys(prefix), f"list {prefix}")

    def _retry_call(self, operation: Callable[[], T], operation_name: str) -> T:
        return call_with_retry(
            operation,
            policy=self.retry,
            clock=self.clock,
            operation_name=operation_name,
        )


def resolve_bootstrap(
    store: ObjectStore,
    bootstrap_id: str,
    *,
    clock: Clock | None = None,
    retry: RetryPolicy | None = None,
) -> str:
    """Return the session id a bootstrap pointer belongs to."""

    stored = call_with_retry(
        lambda: store.get(keys.bootstrap_key(bootstrap_id)),
        policy=retry or RetryPolicy(),
        clock=clock,
        operation_name=f"get bootstrap {bootstrap_id}",
    )
    if stored is None:
        raise BootstrapNotFoundError(bootstrap_id)
    return str(_RECORD_CODEC.decode(stored.body)["session_id"])


def list_session_ids(
    store: ObjectStore,
    *,
    clock: Clock | None = None,
    retry: RetryPolicy | None = None,
) -> list[str]:
    """Session ids that have a manifest, in key order."""

    all_keys = call_with_retry(
        lambda: store.list_keys(keys.SESSIONS_PREFIX),
        policy=retry or RetryPolicy(),
        clock=clock,
        operation_name="list sessions",
    )
    session_ids: list[str] = []
    for key in all_keys:
        session_id = keys.session_id_from_manifest_key(key)
        if session_id is not None:
            session_ids.append(session_id)
    return session_ids


def _decode_record(stored: StoredObject) -> TaskRecord:
    return TaskRecord.from_dict(_RECORD_CODEC.decode(stored.body))
