"""Worker agent: polls a session for pending tasks and runs them one at a time."""

from __future__ import annotations

import logging
import pickle
import signal
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from burstpool.clock import Clock, SystemClock
from burstpool.coordination.models import TaskRecord, TaskState
from burstpool.coordination.protocol import (
    ClaimOutcome,
    CoordinationProtocol,
    resolve_bootstrap,
)
from burstpool.coordination.serializers import JsonSerializer, Serializer, get_serializer
from burstpool.errors import SessionNotFoundError, StoreUnavailableError
from burstpool.store.base import ObjectStore, RetryPolicy
from burstpool.worker.executor import (
    ExecutionOutcome,
    TaskExecutor,
    build_executor,
    error_from_exception,
    run_executor,
)

logger = logging.getLogger(__name__)

DEFAULT_IDLE_TIMEOUT_SECONDS = 300.0
DEFAULT_SCAN_LIMIT = 100
_SLEEP_SLICE_SECONDS = 1.0


class AgentState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    EXECUTING = "executing"
    REPORTING = "reporting"
    EXITING = "exiting"


class ExitReason(str, Enum):
    IDLE_TIMEOUT = "idle_timeout"
    SESSION_TERMINATED = "session_terminated"
    SESSION_EXPIRED = "session_expired"
    SESSION_MISSING = "session_missing"
    STOP_REQUESTED = "stop_requested"
    MAX_TASKS = "max_tasks"


@dataclass(slots=True)
class Backoff:
    """Doubling poll delay, capped, reset whenever a task is claimed."""

    initial_seconds: float = 1.0
    max_seconds: float = 30.0
    current_seconds: float = field(init=False)

    def __post_init__(self) -> None:
        self.current_seconds = self.initial_seconds

    def next_delay(self) -> float:
        delay = self.current_seconds
        self.current_seconds = min(self.current_seconds * 2, self.max_seconds)
        return delay

    def reset(self) -> None:
        self.current_seconds = self.initial_seconds


@dataclass(slots=True)
class AgentRunSummary:
    """Aggregate agent counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    claim_conflicts: int = 0
    empty_polls: int = 0
    exit_reason: ExitReason | None = None


class WorkerAgent:
    """Explicit state machine driven by ``step()``.

    Each task is claimed through a conditional write before anything runs, so
    two agents never execute the same task. The manifest is checked once per
    poll cycle; termination therefore stops an agent between tasks, never in
    the middle of one.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        store: ObjectStore,
        session_id: str,
        worker_id: str,
        executor: TaskExecutor,
        serializer: Serializer | None = None,
        clock: Clock | None = None,
        retry: RetryPolicy | None = None,
        backoff: Backoff | None = None,
        idle_timeout_seconds: float = DEFAULT_IDLE_TIMEOUT_SECONDS,
        scan_limit: int = DEFAULT_SCAN_LIMIT,
        max_tasks: int | None = None,
    ) -> None:
        self.clock = clock or SystemClock()
        self.protocol = CoordinationProtocol(store, session_id, clock=self.clock, retry=retry)
        self.session_id = session_id
        self.worker_id = worker_id
        self.executor = executor
        self.serializer = serializer or JsonSerializer()
        self.backoff = backoff or Backoff()
        self.idle_timeout_seconds = idle_timeout_seconds
        self.scan_limit = scan_limit
        self.max_tasks = max_tasks
        self.state = AgentState.IDLE
        self.summary = AgentRunSummary()
        self._stop_requested = False
        self._stop_signal_name: str | None = None
        self._idle_since = self.clock.monotonic()
        self._delay_before_poll = 0.0
        self._current_task_id: str | None = None
        self._outcome: ExecutionOutcome | None = None

    @classmethod
    def from_bootstrap(  # noqa: PLR0913
        cls,
        store: ObjectStore,
        bootstrap_id: str,
        *,
        clock: Clock | None = None,
        retry: RetryPolicy | None = None,
        executor: TaskExecutor | None = None,
        idle_timeout_seconds: float | None = None,
        max_tasks: int | None = None,
    ) -> WorkerAgent:
        """Resolve the session behind a bootstrap id and configure from its manifest."""

        session_id = resolve_bootstrap(store, bootstrap_id, clock=clock, retry=retry)
        protocol = CoordinationProtocol(store, session_id, clock=clock, retry=retry)
        backend = protocol.read_manifest().manifest.backend
        return cls(
            store=store,
            session_id=session_id,
            worker_id=bootstrap_id,
            executor=executor
            or build_executor(
                backend.executor,
                task_timeout_seconds=backend.task_timeout_seconds,
            ),
            serializer=get_serializer(backend.payload_serializer),
            clock=clock,
            retry=retry,
            backoff=Backoff(backend.poll_initial_seconds, backend.poll_max_seconds),
            idle_timeout_seconds=(
                backend.idle_timeout_seconds
                if idle_timeout_seconds is None
                else idle_timeout_seconds
            ),
            scan_limit=backend.scan_limit,
            max_tasks=max_tasks,
        )

    def run(self) -> AgentRunSummary:
        """Step until the agent exits; returns counters and the exit reason."""

        logger.info("Worker %s started on session %s", self.worker_id, self.session_id)
        with self._signal_handlers():
            while self.state is not AgentState.EXITING:
                self.step()
        logger.info(
            "Worker %s exiting (%s): processed=%d completed=%d failed=%d",
            self.worker_id,
            self.summary.exit_reason.value if self.summary.exit_reason else "unknown",
            self.summary.processed,
            self.summary.completed,
            self.summary.failed,
        )
        return self.summary

    def step(self) -> AgentState:
        if self.state is AgentState.IDLE:
            self.state = self._step_idle()
        elif self.state is AgentState.POLLING:
            self.state = self._step_polling()
        elif self.state is AgentState.EXECUTING:
            self.state = self._step_executing()
        elif self.state is AgentState.REPORTING:
            self.state = self._step_reporting()
        elif self.state is AgentState.EXITING:
            pass
        else:
            raise ValueError(f"Unhandled agent state: {self.state!r}")
        return self.state

    def request_stop(self, *, signal_name: str = "request") -> None:
        self._stop_requested = True
        self._stop_signal_name = signal_name

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def _step_idle(self) -> AgentState:
        if self._stop_requested:
            return self._exit(ExitReason.STOP_REQUESTED)
        if self.max_tasks is not None and self.summary.processed >= self.max_tasks:
            return self._exit(ExitReason.MAX_TASKS)

        store_reachable = True
        try:
            manifest = self.protocol.read_manifest().manifest
        except SessionNotFoundError:
            return self._exit(ExitReason.SESSION_MISSING)
        except StoreUnavailableError as error:
            logger.warning("Worker %s could not read manifest: %s", self.worker_id, error)
            store_reachable = False
        else:
            if manifest.is_terminated:
                return self._exit(ExitReason.SESSION_TERMINATED)
            if manifest.is_expired(self.clock.now()):
                return self._exit(ExitReason.SESSION_EXPIRED)

        if self.clock.monotonic() - self._idle_since >= self.idle_timeout_seconds:
            return self._exit(ExitReason.IDLE_TIMEOUT)

        if self._delay_before_poll > 0:
            self._sleep_with_stop(self._delay_before_poll)
            self._delay_before_poll = 0.0
        if not store_reachable:
            self._register_empty_poll()
            return AgentState.IDLE
        return AgentState.POLLING

    def _step_polling(self) -> AgentState:
        try:
            candidates = self.protocol.list_pending(self.scan_limit)
        except StoreUnavailableError as error:
            logger.warning("Worker %s could not scan tasks: %s", self.worker_id, error)
            self._register_empty_poll()
            return AgentState.IDLE

        for task_id in candidates:
            if self._stop_requested:
                break
            try:
                outcome = self.protocol.claim(task_id, self.worker_id)
            except StoreUnavailableError as error:
                logger.warning("Worker %s could not claim %s: %s", self.worker_id, task_id, error)
                break
            if outcome is ClaimOutcome.CLAIMED:
                self.backoff.reset()
                self._current_task_id = task_id
                return AgentState.EXECUTING
            if outcome is ClaimOutcome.CONFLICT:
                self.summary.claim_conflicts += 1

        self._register_empty_poll()
        return AgentState.IDLE

    def _step_executing(self) -> AgentState:
        task_id = self._current_task_id
        self.summary.processed += 1
        try:
            record = self.protocol.mark_running(task_id, self.worker_id)
        except StoreUnavailableError as error:
            logger.error("Worker %s could not start %s: %s", self.worker_id, task_id, error)
            return self._finish_task()
        if record is None:
            return self._finish_task()

        try:
            payload = self._load_payload(record)
        except Exception as error:  # noqa: BLE001
            self._outcome = ExecutionOutcome(error=error_from_exception(error))
        else:
            self._outcome = run_executor(self.executor, payload)
        return AgentState.REPORTING

    def _step_reporting(self) -> AgentState:
        task_id = self._current_task_id
        outcome = self._outcome or ExecutionOutcome()
        body: bytes | None = None
        if outcome.ok:
            try:
                body = self.serializer.encode(outcome.value)
            except (TypeError, ValueError, AttributeError, pickle.PicklingError) as error:
                outcome = ExecutionOutcome(error=error_from_exception(error))

        try:
            if body is not None:
                updated = self.protocol.complete(task_id, self.worker_id, body)
            else:
                updated = self.protocol.fail(task_id, self.worker_id, outcome.error)
        except StoreUnavailableError as error:
            logger.error("Worker %s could not report %s: %s", self.worker_id, task_id, error)
            return self._finish_task()

        if updated is None:
            pass
        elif updated.state is TaskState.COMPLETED:
            self.summary.completed += 1
            logger.info("Task %s completed by %s", task_id, self.worker_id)
        elif updated.state is TaskState.FAILED:
            self.summary.failed += 1
            logger.info(
                "Task %s failed on %s: %s: %s",
                task_id,
                self.worker_id,
                updated.error.kind if updated.error else "Error",
                updated.error.message if updated.error else "",
            )
        else:
            raise ValueError(f"Unexpected reported state: {updated.state!r}")
        return self._finish_task()

    def _load_payload(self, record: TaskRecord) -> Any:
        return self.serializer.decode(self.protocol.read_payload(record))

    def _finish_task(self) -> AgentState:
        self._current_task_id = None
        self._outcome = None
        self._idle_since = self.clock.monotonic()
        return AgentState.IDLE

    def _register_empty_poll(self) -> None:
        self.summary.empty_polls += 1
        self._delay_before_poll = self.backoff.next_delay()
        logger.debug(
            "Worker %s found nothing to claim; next poll in %.1fs",
            self.worker_id,
            self._delay_before_poll,
        )

    def _exit(self, reason: ExitReason) -> AgentState:
        self.summary.exit_reason = reason
        return AgentState.EXITING

    def _sleep_with_stop(self, seconds: float) -> None:
        deadline = self.clock.monotonic() + seconds
        while not self._stop_requested:
            remaining = deadline - self.clock.monotonic()
            if remaining <= 0:
                return
            self.clock.sleep(min(_SLEEP_SLICE_SECONDS, remaining))

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            try:
                name = signal.Signals(signum).name
            except ValueError:
                name = str(signum)
            logger.info("Worker %s received %s; stopping after current task", self.worker_id, name)
            self.request_stop(signal_name=name)

        try:
            signal.signal(signal.SIGINT, _handler)
            signal.signal(signal.SIGTERM, _handler)
        except ValueError:
            # Only the main thread may install handlers.
            yield
            return
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
