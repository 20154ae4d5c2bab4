"""Session manager: create or attach to a session, submit work, observe and collect it."""

from __future__ import annotations

import logging
import pickle
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any
from uuid import uuid4

from burstpool.clock import Clock, SystemClock
from burstpool.coordination.models import (
    SESSION_EXPIRED_KIND,
    BackendConfig,
    Manifest,
    SessionState,
    SessionStats,
    TaskError,
    TaskRecord,
    TaskResult,
    TaskState,
)
from burstpool.coordination.protocol import CoordinationProtocol, list_session_ids
from burstpool.coordination.serializers import Serializer, get_serializer
from burstpool.errors import (
    ManifestConflictError,
    SessionExpiredError,
    SessionNotFoundError,
    SessionTerminatedError,
    StoreUnavailableError,
)
from burstpool.session.launcher import TaskLauncher
from burstpool.store.base import ObjectStore, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_ABSOLUTE_TIMEOUT_SECONDS = 86_400
DEFAULT_COLLECT_TIMEOUT_SECONDS = 3_600.0
DEFAULT_COLLECT_POLL_SECONDS = 2.0


@dataclass(slots=True, frozen=True)
class SessionStatus:
    """Counts over non-bootstrap tasks as seen by one ``status()`` call."""

    session_id: str
    total: int
    pending: int
    claimed: int
    running: int
    completed: int
    failed: int
    expired: bool
    terminated: bool
    absolute_timeout: datetime

    @property
    def progress(self) -> float:
        if self.total == 0:
            return 0.0
        return round(100.0 * self.completed / self.total, 1)

    @property
    def finished(self) -> bool:
        return self.completed + self.failed == self.total


@dataclass(slots=True, frozen=True)
class SessionSummary:
    """One row of ``list_sessions``, built from the manifest's cached counters."""

    session_id: str
    created_at: datetime
    last_activity: datetime
    absolute_timeout: datetime
    state: SessionState
    expired: bool
    stats: SessionStats


@dataclass(slots=True)
class CleanupReport:
    stopped_workers: int = 0
    deleted_objects: int = 0
    stop_failures: list[str] = field(default_factory=list)


def new_session_id() -> str:
    return f"session-{uuid4().hex}"


def new_task_id() -> str:
    return f"task-{uuid4().hex}"


class SessionManager:
    """Handle on one session; any number of managers may attach to the same one.

    The manager never writes task records. It creates them on submit and
    otherwise only reads them, so observing a session from several processes
    is safe.
    """

    def __init__(
        self,
        store: ObjectStore,
        session_id: str,
        *,
        launcher: TaskLauncher | None = None,
        clock: Clock | None = None,
        retry: RetryPolicy | None = None,
        collect_poll_seconds: float = DEFAULT_COLLECT_POLL_SECONDS,
    ) -> None:
        self.store = store
        self.session_id = session_id
        self.launcher = launcher
        self.clock = clock or SystemClock()
        self.protocol = CoordinationProtocol(store, session_id, clock=self.clock, retry=retry)
        self.collect_poll_seconds = collect_poll_seconds
        self._serializer: Serializer | None = None
        self._results: dict[str, TaskResult] = {}

    @classmethod
    def create(  # noqa: PLR0913
        cls,
        store: ObjectStore,
        config: BackendConfig,
        *,
        launcher: TaskLauncher,
        clock: Clock | None = None,
        retry: RetryPolicy | None = None,
        absolute_timeout_seconds: int = DEFAULT_ABSOLUTE_TIMEOUT_SECONDS,
        collect_poll_seconds: float = DEFAULT_COLLECT_POLL_SECONDS,
        session_id: str | None = None,
    ) -> SessionManager:
        """Write the manifest and one bootstrap task per worker, then launch workers."""

        get_serializer(config.payload_serializer)
        manager = cls(
            store,
            session_id or new_session_id(),
            launcher=launcher,
            clock=clock,
            retry=retry,
            collect_poll_seconds=collect_poll_seconds,
        )
        now = manager.clock.now()
        manager.protocol.create_manifest(
            Manifest(
                session_id=manager.session_id,
                created_at=now,
                last_activity=now,
                absolute_timeout=now + timedelta(seconds=absolute_timeout_seconds),
                backend=config,
            ),
        )
        bootstrap_ids = [
            manager.protocol.create_bootstrap(index) for index in range(config.workers)
        ]
        handles = launcher.launch(manager.session_id, bootstrap_ids, config)
        if handles:
            manager.protocol.update_manifest(
                lambda manifest: manifest.worker_handles.extend(handles),
            )
        logger.info(
            "Session %s created: workers=%d launched=%d timeout=%s",
            manager.session_id,
            config.workers,
            len(handles),
            now + timedelta(seconds=absolute_timeout_seconds),
        )
        return manager

    @classmethod
    def attach(
        cls,
        store: ObjectStore,
        session_id: str,
        *,
        launcher: TaskLauncher | None = None,
        clock: Clock | None = None,
        retry: RetryPolicy | None = None,
        collect_poll_seconds: float = DEFAULT_COLLECT_POLL_SECONDS,
    ) -> SessionManager:
        """Rebuild a handle from the stored manifest; raises ``SessionNotFoundError``."""

        manager = cls(
            store,
            session_id,
            launcher=launcher,
            clock=clock,
            retry=retry,
            collect_poll_seconds=collect_poll_seconds,
        )
        manifest = manager.manifest()
        if manifest.is_expired(manager.clock.now()):
            logger.warning(
                "Attached to expired session %s; unfinished tasks will be reported as failed",
                session_id,
            )
        return manager

    def manifest(self) -> Manifest:
        return self.protocol.read_manifest().manifest

    @property
    def serializer(self) -> Serializer:
        if self._serializer is None:
            self._serializer = get_serializer(self.manifest().backend.payload_serializer)
        return self._serializer

    def submit(self, payload: Any) -> str:
        """Store ``payload`` as a new pending task and return its id."""

        manifest = self.manifest()
        if manifest.is_terminated:
            raise SessionTerminatedError(self.session_id)
        if manifest.is_expired(self.clock.now()):
            raise SessionExpiredError(self.session_id)
        if self._serializer is None:
            self._serializer = get_serializer(manifest.backend.payload_serializer)

        task_id = new_task_id()
        self.protocol.create_task(task_id, self._serializer.encode(payload))
        try:
            self.protocol.update_manifest(_count_submitted_task)
        except (ManifestConflictError, StoreUnavailableError) as error:
            logger.warning(
                "Task %s stored but counters of %s not updated: %s",
                task_id,
                self.session_id,
                error,
            )
        logger.info("Task %s submitted to session %s", task_id, self.session_id)
        return task_id

    def status(self) -> SessionStatus:
        manifest = self.manifest()
        expired = manifest.is_expired(self.clock.now())
        stats = SessionStats.from_records(self.protocol.list_records())
        self._refresh_manifest_stats(manifest, stats)
        if expired:
            stats = _expire_unfinished(stats)
        return SessionStatus(
            session_id=self.session_id,
            total=stats.total,
            pending=stats.pending,
            claimed=stats.claimed,
            running=stats.running,
            completed=stats.completed,
            failed=stats.failed,
            expired=expired,
            terminated=manifest.is_terminated,
            absolute_timeout=manifest.absolute_timeout,
        )

    def collect(
        self,
        *,
        wait: bool = False,
        timeout: float = DEFAULT_COLLECT_TIMEOUT_SECONDS,
        poll_interval: float | None = None,
    ) -> dict[str, TaskResult]:
        """Results of every finished task; with ``wait`` poll until all are finished.

        Never raises for failed tasks or on timeout: a timeout returns whatever
        has finished so far. Results fetched once are kept, so successive calls
        only ever add entries.
        """

        interval = poll_interval if poll_interval is not None else self.collect_poll_seconds
        deadline = self.clock.monotonic() + timeout
        while True:
            manifest = self.manifest()
            expired = manifest.is_expired(self.clock.now())
            records = self.protocol.list_records()
            unfinished = self._absorb_results(records)
            if expired:
                return self._with_expired(unfinished)
            if not wait or not unfinished:
                return dict(self._results)
            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Collect on %s timed out with %d unfinished tasks",
                    self.session_id,
                    len(unfinished),
                )
                return dict(self._results)
            logger.debug(
                "Waiting on %d unfinished tasks in %s",
                len(unfinished),
                self.session_id,
            )
            self.clock.sleep(min(interval, remaining))

    def extend(self, seconds: int) -> datetime:
        """Move the absolute timeout to ``now + seconds``."""

        if seconds <= 0:
            raise ValueError("seconds must be positive")
        new_timeout = self.clock.now() + timedelta(seconds=seconds)

        def _extend(manifest: Manifest) -> None:
            if manifest.is_terminated:
                raise SessionTerminatedError(self.session_id)
            manifest.absolute_timeout = new_timeout

        self.protocol.update_manifest(_extend)
        logger.info("Session %s extended until %s", self.session_id, new_timeout.isoformat())
        return new_timeout

    def cleanup(self, *, stop_workers: bool = True, delete_data: bool = False) -> CleanupReport:
        """Terminate the session, stop its workers, and optionally delete its objects."""

        report = CleanupReport()
        handles = self.manifest().worker_handles
        if not delete_data:
            now = self.clock.now()

            def _terminate(manifest: Manifest) -> None:
                manifest.state = SessionState.TERMINATED
                manifest.terminated_at = manifest.terminated_at or now

            self.protocol.update_manifest(_terminate)
            logger.info("Session %s marked terminated", self.session_id)

        if stop_workers:
            if self.launcher is None:
                logger.info(
                    "No launcher attached to %s; workers exit on their next poll",
                    self.session_id,
                )
            else:
                for handle in handles:
                    try:
                        stopped = self.launcher.stop(handle)
                    except OSError as error:
                        logger.warning("Failed to stop worker %s: %s", handle.handle_id, error)
                        report.stop_failures.append(handle.handle_id)
                        continue
                    if stopped:
                        report.stopped_workers += 1
                logger.info("Stopped %d workers of %s", report.stopped_workers, self.session_id)

        if delete_data:
            report.deleted_objects = self.protocol.delete_session_data()
            logger.info("Deleted %d objects of %s", report.deleted_objects, self.session_id)
        return report

    def stale_tasks(self, older_than: timedelta) -> list[TaskRecord]:
        """Claimed or running tasks whose last transition is older than ``older_than``."""

        cutoff = self.clock.now() - older_than
        return [
            record
            for record in self.protocol.list_records()
            if record.state in (TaskState.CLAIMED, TaskState.RUNNING)
            and record.last_transition_at < cutoff
        ]

    def _absorb_results(self, records: list[TaskRecord]) -> list[TaskRecord]:
        unfinished: list[TaskRecord] = []
        for record in records:
            if record.task_id in self._results:
                continue
            if record.state is TaskState.COMPLETED:
                result = self._load_result(record)
                if result is None:
                    unfinished.append(record)
                else:
                    self._results[record.task_id] = result
            elif record.state is TaskState.FAILED:
                self._results[record.task_id] = TaskResult(
                    task_id=record.task_id,
                    ok=False,
                    error=record.error or TaskError(kind="Error", message="Task failed"),
                )
            elif record.state in (TaskState.PENDING, TaskState.CLAIMED, TaskState.RUNNING):
                unfinished.append(record)
            else:
                raise ValueError(f"Unhandled task state: {record.state!r}")
        return unfinished

    def _load_result(self, record: TaskRecord) -> TaskResult | None:
        body = self.protocol.read_result(record)
        if body is None:
            logger.warning("Task %s is completed but its result is not readable yet", record.task_id)
            return None
        try:
            value = self.serializer.decode(body)
        except (ValueError, TypeError, pickle.UnpicklingError) as error:
            return TaskResult(
                task_id=record.task_id,
                ok=False,
                error=TaskError(kind=type(error).__name__, message=f"Undecodable result: {error}"),
            )
        return TaskResult(task_id=record.task_id, ok=True, value=value)

    def _with_expired(self, unfinished: list[TaskRecord]) -> dict[str, TaskResult]:
        results = dict(self._results)
        for record in unfinished:
            results[record.task_id] = TaskResult(
                task_id=record.task_id,
                ok=False,
                error=TaskError(
                    kind=SESSION_EXPIRED_KIND,
                    message=f"Session {self.session_id} expired before the task finished "
                    f"(last state: {record.state.value})",
                ),
            )
        return results

    def _refresh_manifest_stats(self, manifest: Manifest, stats: SessionStats) -> None:
        if manifest.stats == stats:
            return
        try:
            self.protocol.update_manifest(
                lambda current: setattr(current, "stats", stats),
                attempts=1,
            )
        except (ManifestConflictError, StoreUnavailableError) as error:
            logger.warning("Could not refresh counters of %s: %s", self.session_id, error)


def list_sessions(
    store: ObjectStore,
    *,
    clock: Clock | None = None,
    retry: RetryPolicy | None = None,
) -> list[SessionSummary]:
    """Summaries of every session with a manifest in ``store``."""

    clock = clock or SystemClock()
    now = clock.now()
    summaries: list[SessionSummary] = []
    for session_id in list_session_ids(store, clock=clock, retry=retry):
        protocol = CoordinationProtocol(store, session_id, clock=clock, retry=retry)
        try:
            manifest = protocol.read_manifest().manifest
        except SessionNotFoundError:
            continue
        summaries.append(
            SessionSummary(
                session_id=session_id,
                created_at=manifest.created_at,
                last_activity=manifest.last_activity,
                absolute_timeout=manifest.absolute_timeout,
                state=manifest.state,
                expired=manifest.is_expired(now),
                stats=manifest.stats,
            ),
        )
    return summaries


def _count_submitted_task(manifest: Manifest) -> None:
    manifest.stats.total += 1
    manifest.stats.pending += 1


def _expire_unfinished(stats: SessionStats) -> SessionStats:
    return SessionStats(
        total=stats.total,
        completed=stats.completed,
        failed=stats.failed + stats.pending + stats.claimed + stats.running,
    )
