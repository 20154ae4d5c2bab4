"""Session lifecycle: manifest, submission, observation and worker launchers."""

from burstpool.session.launcher import (
    LocalProcessLauncher,
    NullLauncher,
    TaskLauncher,
    ThreadLauncher,
    build_launcher,
)
from burstpool.session.manager import (
    CleanupReport,
    SessionManager,
    SessionStatus,
    SessionSummary,
    list_sessions,
)

__all__ = [
    "CleanupReport",
    "LocalProcessLauncher",
    "NullLauncher",
    "SessionManager",
    "SessionStatus",
    "SessionSummary",
    "TaskLauncher",
    "ThreadLauncher",
    "build_launcher",
    "list_sessions",
]
