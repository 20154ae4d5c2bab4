from __future__ import annotations

from datetime import UTC, datetime, timedelta

import allure
import pytest

from burstpool.coordination.models import (
    ALLOWED_TRANSITIONS,
    BackendConfig,
    Manifest,
    SessionState,
    SessionStats,
    TaskError,
    TaskRecord,
    TaskState,
    WorkerHandle,
)
from burstpool.coordination.serializers import get_serializer
from burstpool.errors import InvalidTransitionError

START = datetime(2026, 10, 18, 12, 0, tzinfo=UTC)

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Task Lifecycle"),
]


def _record(state: TaskState = TaskState.PENDING, *, bootstrap: bool = False) -> TaskRecord:
    return TaskRecord(
        task_id="task-1",
        session_id="session-1",
        state=state,
        created_at=START,
        payload_key="sessions/session-1/tasks/task-1/payload",
        bootstrap=bootstrap,
    )


def test_happy_path_walks_every_allowed_edge() -> None:
    claimed = _record().transition(TaskState.CLAIMED, at=START, owner="worker-a")
    running = claimed.transition(TaskState.RUNNING, at=START + timedelta(seconds=1))
    done = running.transition(
        TaskState.COMPLETED,
        at=START + timedelta(seconds=5),
        result_key="sessions/session-1/tasks/task-1/result",
    )

    assert claimed.owner == "worker-a"
    assert claimed.claimed_at == START
    assert running.started_at == START + timedelta(seconds=1)
    assert done.state is TaskState.COMPLETED
    assert done.result_key.endswith("/result")
    assert done.last_transition_at == START + timedelta(seconds=5)


@pytest.mark.parametrize(
    ("state_from", "state_to"),
    [
        (TaskState.PENDING, TaskState.RUNNING),
        (TaskState.PENDING, TaskState.COMPLETED),
        (TaskState.CLAIMED, TaskState.PENDING),
        (TaskState.RUNNING, TaskState.CLAIMED),
        (TaskState.COMPLETED, TaskState.FAILED),
        (TaskState.FAILED, TaskState.PENDING),
    ],
)
def test_forbidden_edges_raise(state_from: TaskState, state_to: TaskState) -> None:
    with pytest.raises(InvalidTransitionError):
        _record(state_from).transition(state_to, at=START)


def test_terminal_states_have_no_outgoing_edges() -> None:
    for state in TaskState:
        assert (not ALLOWED_TRANSITIONS[state]) == state.is_terminal


def test_record_survives_json_round_trip_with_error() -> None:
    failed = (
        _record()
        .transition(TaskState.CLAIMED, at=START, owner="w")
        .transition(TaskState.RUNNING, at=START)
        .transition(
            TaskState.FAILED,
            at=START,
            error=TaskError(kind="ValueError", message="bad input", traceback="tb"),
        )
    )
    codec = get_serializer("json")

    restored = TaskRecord.from_dict(codec.decode(codec.encode(failed.to_dict())))

    assert restored == failed


def test_stats_skip_bootstrap_records() -> None:
    records = [
        _record(TaskState.PENDING),
        _record(TaskState.CLAIMED, bootstrap=True),
        _record(TaskState.COMPLETED),
        _record(TaskState.FAILED),
    ]

    stats = SessionStats.from_records(records)

    assert stats == SessionStats(total=3, pending=1, completed=1, failed=1)


def test_manifest_expiry_and_round_trip() -> None:
    manifest = Manifest(
        session_id="session-1",
        created_at=START,
        last_activity=START,
        absolute_timeout=START + timedelta(hours=1),
        backend=BackendConfig(workers=3, launch_params={"env": {"A": "1"}}),
        worker_handles=[WorkerHandle("123", "process", "bootstrap-session-1.0")],
    )

    assert not manifest.is_expired(START + timedelta(minutes=59))
    assert manifest.is_expired(START + timedelta(hours=1, seconds=1))
    restored = Manifest.from_dict(manifest.to_dict())
    assert restored == manifest
    assert restored.state is SessionState.ACTIVE


def test_unknown_serializer_is_rejected() -> None:
    with pytest.raises(ValueError, match="Unknown serializer"):
        get_serializer("yaml")
