"""Durable records shared by session managers and worker agents."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any

from burstpool.clock import from_iso, to_iso
from burstpool.errors import InvalidTransitionError

SESSION_EXPIRED_KIND = "SessionExpired"


class TaskState(str, Enum):
    """Task record lifecycle states."""

    PENDING = "pending"
    CLAIMED = "claimed"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.FAILED})

ALLOWED_TRANSITIONS: dict[TaskState, frozenset[TaskState]] = {
    TaskState.PENDING: frozenset({TaskState.CLAIMED}),
    TaskState.CLAIMED: frozenset({TaskState.RUNNING}),
    TaskState.RUNNING: frozenset({TaskState.COMPLETED, TaskState.FAILED}),
    TaskState.COMPLETED: frozenset(),
    TaskState.FAILED: frozenset(),
}


class SessionState(str, Enum):
    """Manifest lifecycle flag checked by agents once per poll cycle."""

    ACTIVE = "active"
    TERMINATED = "terminated"


@dataclass(slots=True, frozen=True)
class TaskError:
    """Captured failure of one task."""

    kind: str
    message: str
    traceback: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "traceback": self.traceback}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskError:
        return cls(
            kind=str(data.get("kind", "Error")),
            message=str(data.get("message", "")),
            traceback=data.get("traceback"),
        )


@dataclass(slots=True, frozen=True)
class TaskRecord:
    """Status record of one unit of work."""

    task_id: str
    session_id: str
    state: TaskState
    created_at: datetime
    payload_key: str | None = None
    result_key: str | None = None
    owner: str | None = None
    claimed_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    error: TaskError | None = None
    bootstrap: bool = False

    @property
    def last_transition_at(self) -> datetime:
        return self.finished_at or self.started_at or self.claimed_at or self.created_at

    def transition(
        self,
        state_to: TaskState,
        *,
        at: datetime,
        owner: str | None = None,
        result_key: str | None = None,
        error: TaskError | None = None,
    ) -> TaskRecord:
        """Return the record moved to ``state_to``; raise on a forbidden edge."""

        if state_to not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransitionError(self.task_id, self.state.value, state_to.value)
        if state_to is TaskState.CLAIMED:
            return replace(self, state=state_to, owner=owner, claimed_at=at)
        if state_to is TaskState.RUNNING:
            return replace(self, state=state_to, started_at=at)
        if state_to is TaskState.COMPLETED:
            return replace(self, state=state_to, finished_at=at, result_key=result_key)
        if state_to is TaskState.FAILED:
            return replace(self, state=state_to, finished_at=at, error=error)
        raise InvalidTransitionError(self.task_id, self.state.value, state_to.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "session_id": self.session_id,
            "state": self.state.value,
            "created_at": to_iso(self.created_at),
            "payload_key": self.payload_key,
            "result_key": self.result_key,
            "owner": self.owner,
            "claimed_at": to_iso(self.claimed_at),
            "started_at": to_iso(self.started_at),
            "finished_at": to_iso(self.finished_at),
            "error": self.error.to_dict() if self.error is not None else None,
            "bootstrap": self.bootstrap,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> TaskRecord:
        error = data.get("error")
        return cls(
            task_id=data["task_id"],
            session_id=data["session_id"],
            state=TaskState(data["state"]),
            created_at=from_iso(data["created_at"]),
            payload_key=data.get("payload_key"),
            result_key=data.get("result_key"),
            owner=data.get("owner"),
            claimed_at=_optional_datetime(data.get("claimed_at")),
            started_at=_optional_datetime(data.get("started_at")),
            finished_at=_optional_datetime(data.get("finished_at")),
            error=TaskError.from_dict(error) if error else None,
            bootstrap=bool(data.get("bootstrap", False)),
        )


@dataclass(slots=True)
class SessionStats:
    """Task counts by state, bootstrap records excluded."""

    total: int = 0
    pending: int = 0
    claimed: int = 0
    running: int = 0
    completed: int = 0
    failed: int = 0

    @classmethod
    def from_records(cls, records: Iterable[TaskRecord]) -> SessionStats:
        stats = cls()
        for record in records:
            if record.bootstrap:
                continue
            stats.total += 1
            if record.state is TaskState.PENDING:
                stats.pending += 1
            elif record.state is TaskState.CLAIMED:
                stats.claimed += 1
            elif record.state is TaskState.RUNNING:
                stats.running += 1
            elif record.state is TaskState.COMPLETED:
                stats.completed += 1
            elif record.state is TaskState.FAILED:
                stats.failed += 1
            else:
                raise ValueError(f"Unhandled task state: {record.state!r}")
        return stats

    def to_dict(self) -> dict[str, int]:
        return {
            "total": self.total,
            "pending": self.pending,
            "claimed": self.claimed,
            "running": self.running,
            "completed": self.completed,
            "failed": self.failed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SessionStats:
        return cls(**{name: int(data.get(name, 0)) for name in cls().to_dict()})


@dataclass(slots=True)
class BackendConfig:
    """Worker shape and launch parameters persisted in the manifest."""

    workers: int = 10
    cpu: int = 4
    memory: str = "8GB"
    region: str = "local"
    task_timeout_seconds: int = 3_600
    launcher: str = "process"
    executor: str = "import_path"
    payload_serializer: str = "json"
    idle_timeout_seconds: float = 300.0
    poll_initial_seconds: float = 1.0
    poll_max_seconds: float = 30.0
    scan_limit: int = 100
    launch_params: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "workers": self.workers,
            "cpu": self.cpu,
            "memory": self.memory,
            "region": self.region,
            "task_timeout_seconds": self.task_timeout_seconds,
            "launcher": self.launcher,
            "executor": self.executor,
            "payload_serializer": self.payload_serializer,
            "idle_timeout_seconds": self.idle_timeout_seconds,
            "poll_initial_seconds": self.poll_initial_seconds,
            "poll_max_seconds": self.poll_max_seconds,
            "scan_limit": self.scan_limit,
            "launch_params": dict(self.launch_params),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> BackendConfig:
        defaults = cls()
        return cls(
            workers=int(data.get("workers", defaults.workers)),
            cpu=int(data.get("cpu", defaults.cpu)),
            memory=str(data.get("memory", defaults.memory)),
            region=str(data.get("region", defaults.region)),
            task_timeout_seconds=int(
                data.get("task_timeout_seconds", defaults.task_timeout_seconds),
            ),
            launcher=str(data.get("launcher", defaults.launcher)),
            executor=str(data.get("executor", defaults.executor)),
            payload_serializer=str(data.get("payload_serializer", defaults.payload_serializer)),
            idle_timeout_seconds=float(
                data.get("idle_timeout_seconds", defaults.idle_timeout_seconds),
            ),
            poll_initial_seconds=float(
                data.get("poll_initial_seconds", defaults.poll_initial_seconds),
            ),
            poll_max_seconds=float(data.get("poll_max_seconds", defaults.poll_max_seconds)),
            scan_limit=int(data.get("scan_limit", defaults.scan_limit)),
            launch_params=dict(data.get("launch_params") or {}),
        )


@dataclass(slots=True, frozen=True)
class WorkerHandle:
    """Launcher-specific reference to one started worker."""

    handle_id: str
    kind: str
    bootstrap_task_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "handle_id": self.handle_id,
            "kind": self.kind,
            "bootstrap_task_id": self.bootstrap_task_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkerHandle:
        return cls(
            handle_id=str(data["handle_id"]),
            kind=str(data["kind"]),
            bootstrap_task_id=str(data["bootstrap_task_id"]),
        )


@dataclass(slots=True)
class Manifest:
    """Root record of a session."""

    session_id: str
    created_at: datetime
    last_activity: datetime
    absolute_timeout: datetime
    backend: BackendConfig
    stats: SessionStats = field(default_factory=SessionStats)
    state: SessionState = SessionState.ACTIVE
    terminated_at: datetime | None = None
    worker_handles: list[WorkerHandle] = field(default_factory=list)

    @property
    def is_terminated(self) -> bool:
        return self.state is SessionState.TERMINATED

    def is_expired(self, now: datetime) -> bool:
        return now > self.absolute_timeout

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "created_at": to_iso(self.created_at),
            "last_activity": to_iso(self.last_activity),
            "absolute_timeout": to_iso(self.absolute_timeout),
            "backend": self.backend.to_dict(),
            "stats": self.stats.to_dict(),
            "state": self.state.value,
            "terminated_at": to_iso(self.terminated_at),
            "worker_handles": [handle.to_dict() for handle in self.worker_handles],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Manifest:
        return cls(
            session_id=data["session_id"],
            created_at=from_iso(data["created_at"]),
            last_activity=from_iso(data["last_activity"]),
            absolute_timeout=from_iso(data["absolute_timeout"]),
            backend=BackendConfig.from_dict(data.get("backend") or {}),
            stats=SessionStats.from_dict(data.get("stats") or {}),
            state=SessionState(data.get("state", SessionState.ACTIVE.value)),
            terminated_at=_optional_datetime(data.get("terminated_at")),
            worker_handles=[
                WorkerHandle.from_dict(item) for item in data.get("worker_handles") or []
            ],
        )


@dataclass(slots=True, frozen=True)
class TaskResult:
    """Per-task entry returned by collect: a value or a captured error."""

    task_id: str
    ok: bool
    value: Any = None
    error: TaskError | None = None


def _optional_datetime(value: str | None) -> datetime | None:
    if value is None:
        return None
    return from_iso(value)
