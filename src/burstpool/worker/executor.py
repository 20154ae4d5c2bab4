"""Executors that turn a decoded task payload into a result value."""

from __future__ import annotations

import importlib
import subprocess
import traceback
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Protocol

from burstpool.coordination.models import TaskError
from burstpool.errors import BurstpoolError


class TaskExecutor(Protocol):
    """Runs one task payload; raising marks the task failed."""

    def execute(self, payload: Any) -> Any: ...


class PayloadError(BurstpoolError):
    """Payload does not match the shape an executor expects."""


class CommandFailedError(BurstpoolError):
    """Command exited with a non-zero status."""

    def __init__(self, argv: list[str], returncode: int, stderr: str) -> None:
        tail = stderr.strip()[-500:]
        super().__init__(f"Command {argv[0]!r} exited with status {returncode}: {tail}")
        self.argv = argv
        self.returncode = returncode
        self.stderr = stderr


@dataclass(slots=True, frozen=True)
class ExecutionOutcome:
    """Value produced by the executor, or the error it raised."""

    value: Any = None
    error: TaskError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


def error_from_exception(error: BaseException) -> TaskError:
    return TaskError(
        kind=type(error).__name__,
        message=str(error),
        traceback="".join(traceback.format_exception(error)),
    )


def run_executor(executor: TaskExecutor, payload: Any) -> ExecutionOutcome:
    """Invoke ``executor`` and capture any exception as a ``TaskError``."""

    try:
        value = executor.execute(payload)
    except Exception as error:  # noqa: BLE001
        return ExecutionOutcome(error=error_from_exception(error))
    return ExecutionOutcome(value=value)


class CallableExecutor:
    """Applies a Python callable to the payload."""

    def __init__(self, fn: Callable[[Any], Any]) -> None:
        self.fn = fn

    def execute(self, payload: Any) -> Any:
        return self.fn(payload)


class ImportPathExecutor:
    """Calls ``{"callable": "pkg.module:func", "args": [...], "kwargs": {...}}``."""

    def execute(self, payload: Any) -> Any:
        if not isinstance(payload, dict) or not isinstance(payload.get("callable"), str):
            raise PayloadError("Payload must be a mapping with a 'callable' import path")
        fn = resolve_callable(payload["callable"])
        args = payload.get("args") or []
        kwargs = payload.get("kwargs") or {}
        if not isinstance(args, list) or not isinstance(kwargs, dict):
            raise PayloadError("'args' must be a list and 'kwargs' a mapping")
        return fn(*args, **kwargs)


class CommandExecutor:
    """Runs ``{"argv": [...], "timeout_seconds": n}`` as a subprocess."""

    def __init__(self, *, default_timeout_seconds: float | None = None) -> None:
        self.default_timeout_seconds = default_timeout_seconds

    def execute(self, payload: Any) -> dict[str, Any]:
        if not isinstance(payload, dict):
            raise PayloadError("Payload must be a mapping with an 'argv' list")
        argv = payload.get("argv")
        if not isinstance(argv, list) or not argv:
            raise PayloadError("'argv' must be a non-empty list")
        argv = [str(item) for item in argv]
        timeout = payload.get("timeout_seconds", self.default_timeout_seconds)
        completed = subprocess.run(  # noqa: S603
            argv,
            capture_output=True,
            text=True,
            timeout=float(timeout) if timeout is not None else None,
            check=False,
        )
        if completed.returncode != 0:
            raise CommandFailedError(argv, completed.returncode, completed.stderr)
        return {
            "returncode": completed.returncode,
            "stdout": completed.stdout,
            "stderr": completed.stderr,
        }


def resolve_callable(import_path: str) -> Callable[..., Any]:
    """Resolve ``package.module:attr.path`` to a callable."""

    module_name, separator, attr_path = import_path.partition(":")
    if not separator or not module_name or not attr_path:
        raise PayloadError(f"Invalid callable path {import_path!r}; expected 'module:function'")
    target: Any = importlib.import_module(module_name)
    for part in attr_path.split("."):
        target = getattr(target, part)
    if not callable(target):
        raise PayloadError(f"{import_path!r} is not callable")
    return target


def build_executor(name: str, *, task_timeout_seconds: float | None = None) -> TaskExecutor:
    if name == "import_path":
        return ImportPathExecutor()
    if name == "command":
        return CommandExecutor(default_timeout_seconds=task_timeout_seconds)
    raise ValueError(f"Unsupported executor: {name!r}")
