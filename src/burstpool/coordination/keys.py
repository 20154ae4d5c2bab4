"""Object key layout for sessions, tasks and bootstrap pointers."""

from __future__ import annotations

import re

SESSIONS_PREFIX = "sessions/"
BOOTSTRAP_PREFIX = "bootstrap/"
BOOTSTRAP_ID_PREFIX = "bootstrap-"
STATUS_SUFFIX = "/status"
# Never part of a session id; ends the per-session bootstrap prefix.
BOOTSTRAP_INDEX_SEPARATOR = "."

_SESSION_ID_PATTERN = re.compile(r"[A-Za-z0-9_-]+")


def validate_session_id(session_id: str) -> str:
    if not _SESSION_ID_PATTERN.fullmatch(session_id):
        raise ValueError(
            f"Invalid session id {session_id!r}; use letters, digits, '-' and '_'",
        )
    return session_id


def session_prefix(session_id: str) -> str:
    return f"{SESSIONS_PREFIX}{session_id}/"


def manifest_key(session_id: str) -> str:
    return f"{session_prefix(session_id)}manifest"


def tasks_prefix(session_id: str) -> str:
    return f"{session_prefix(session_id)}tasks/"


def task_status_key(session_id: str, task_id: str) -> str:
    return f"{tasks_prefix(session_id)}{task_id}{STATUS_SUFFIX}"


def task_payload_key(session_id: str, task_id: str) -> str:
    return f"{tasks_prefix(session_id)}{task_id}/payload"


def task_result_key(session_id: str, task_id: str) -> str:
    return f"{tasks_prefix(session_id)}{task_id}/result"


def bootstrap_task_id(session_id: str, index: int) -> str:
    return f"{BOOTSTRAP_ID_PREFIX}{session_id}{BOOTSTRAP_INDEX_SEPARATOR}{index}"


def bootstrap_key(bootstrap_id: str) -> str:
    return f"{BOOTSTRAP_PREFIX}{bootstrap_id}"


def session_bootstrap_prefix(session_id: str) -> str:
    return f"{BOOTSTRAP_PREFIX}{BOOTSTRAP_ID_PREFIX}{session_id}{BOOTSTRAP_INDEX_SEPARATOR}"


def is_bootstrap_task_id(task_id: str) -> bool:
    return task_id.startswith(BOOTSTRAP_ID_PREFIX)


def task_id_from_status_key(session_id: str, key: str) -> str | None:
    """Extract the task id from ``sessions/{id}/tasks/{task_id}/status``."""

    prefix = tasks_prefix(session_id)
    if not key.startswith(prefix) or not key.endswith(STATUS_SUFFIX):
        return None
    task_id = key[len(prefix) : -len(STATUS_SUFFIX)]
    if not task_id or "/" in task_id:
        return None
    return task_id


def session_id_from_manifest_key(key: str) -> str | None:
    if not key.startswith(SESSIONS_PREFIX) or not key.endswith("/manifest"):
        return None
    session_id = key[len(SESSIONS_PREFIX) : -len("/manifest")]
    if not _SESSION_ID_PATTERN.fullmatch(session_id):
        return None
    return session_id
