"""Error taxonomy shared by store, protocol, workers and sessions."""

from __future__ import annotations


class BurstpoolError(RuntimeError):
    """Base class for all burstpool errors."""


class StoreUnavailableError(BurstpoolError):
    """Transient I/O fault against the object store.

    Raised by store adapters and retried by ``call_with_retry``; only escapes
    once the retry budget is exhausted.
    """

    def __init__(self, message: str, *, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


class InvalidTransitionError(BurstpoolError):
    """A task record was asked to move along an edge the lifecycle forbids."""

    def __init__(self, task_id: str, state_from: str, state_to: str) -> None:
        super().__init__(f"Task {task_id}: transition {state_from} -> {state_to} is not allowed")
        self.task_id = task_id
        self.state_from = state_from
        self.state_to = state_to


class ManifestConflictError(BurstpoolError):
    """Manifest could not be updated after repeated concurrent modifications."""


class SessionNotFoundError(BurstpoolError):
    """No manifest exists for the requested session id."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class SessionExpiredError(BurstpoolError):
    """The session's absolute timeout has passed."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session expired: {session_id}")
        self.session_id = session_id


class SessionTerminatedError(BurstpoolError):
    """The session was terminated by cleanup."""

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session terminated: {session_id}")
        self.session_id = session_id


class BootstrapNotFoundError(BurstpoolError):
    """A worker was started with a bootstrap id that has no pointer record."""

    def __init__(self, bootstrap_id: str) -> None:
        super().__init__(f"Bootstrap task not found: {bootstrap_id}")
        self.bootstrap_id = bootstrap_id


class QuotaExceededError(BurstpoolError):
    """Available capacity cannot fit even a single worker."""

    def __init__(self, resource_class: str, available: int, units_per_worker: int) -> None:
        super().__init__(
            f"Quota for {resource_class!r} allows no workers: "
            f"available={available} units, per worker={units_per_worker}",
        )
        self.resource_class = resource_class
        self.available = available
        self.units_per_worker = units_per_worker
