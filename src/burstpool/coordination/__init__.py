"""Records and conditional-write protocol shared by managers and workers."""

from burstpool.coordination.models import (
    ALLOWED_TRANSITIONS,
    SESSION_EXPIRED_KIND,
    TERMINAL_STATES,
    BackendConfig,
    Manifest,
    SessionState,
    SessionStats,
    TaskError,
    TaskRecord,
    TaskResult,
    TaskState,
    WorkerHandle,
)
from burstpool.coordination.protocol import (
    ClaimOutcome,
    CoordinationProtocol,
    VersionedManifest,
    VersionedTask,
    list_session_ids,
    resolve_bootstrap,
)
from burstpool.coordination.serializers import (
    JsonSerializer,
    PickleSerializer,
    Serializer,
    get_serializer,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "SESSION_EXPIRED_KIND",
    "TERMINAL_STATES",
    "BackendConfig",
    "ClaimOutcome",
    "CoordinationProtocol",
    "JsonSerializer",
    "Manifest",
    "PickleSerializer",
    "Serializer",
    "SessionState",
    "SessionStats",
    "TaskError",
    "TaskRecord",
    "TaskResult",
    "TaskState",
    "VersionedManifest",
    "VersionedTask",
    "WorkerHandle",
    "get_serializer",
    "list_session_ids",
    "resolve_bootstrap",
]
