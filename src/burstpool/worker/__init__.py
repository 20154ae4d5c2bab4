"""Worker agents and the executors they run task payloads with."""

from burstpool.worker.agent import (
    AgentRunSummary,
    AgentState,
    Backoff,
    ExitReason,
    WorkerAgent,
)
from burstpool.worker.executor import (
    CallableExecutor,
    CommandExecutor,
    ExecutionOutcome,
    ImportPathExecutor,
    TaskExecutor,
    build_executor,
    run_executor,
)

__all__ = [
    "AgentRunSummary",
    "AgentState",
    "Backoff",
    "CallableExecutor",
    "CommandExecutor",
    "ExecutionOutcome",
    "ExitReason",
    "ImportPathExecutor",
    "TaskExecutor",
    "WorkerAgent",
    "build_executor",
    "run_executor",
]
