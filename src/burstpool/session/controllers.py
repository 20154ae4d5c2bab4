"""Controllers for session and worker CLI commands."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any

from burstpool.config import Settings
from burstpool.coordination import keys
from burstpool.coordination.models import BackendConfig, TaskResult
from burstpool.session.launcher import NullLauncher, TaskLauncher, build_launcher
from burstpool.session.manager import SessionManager, list_sessions
from burstpool.store import ObjectStore, RetryPolicy, open_store
from burstpool.worker.agent import WorkerAgent
from burstpool.worker.executor import build_executor

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass(slots=True)
class SessionCreateCommand:
    """CLI input for session creation."""

    store_path: Path | None
    workers: int | None
    cpu: int | None
    memory: str | None
    region: str | None
    launcher: str | None
    executor: str | None
    serializer: str | None
    absolute_timeout_seconds: int | None
    idle_timeout_seconds: float | None
    log_level: str = "INFO"


@dataclass(slots=True)
class SessionSubmitCommand:
    """CLI input for task submission; payloads are JSON documents."""

    store_path: Path | None
    session_id: str
    payloads: tuple[str, ...]
    payload_file: Path | None = None


@dataclass(slots=True)
class SessionStatusCommand:
    store_path: Path | None
    session_id: str
    stale_after_seconds: int | None = None


@dataclass(slots=True)
class SessionCollectCommand:
    store_path: Path | None
    session_id: str
    wait: bool
    timeout_seconds: float
    output_path: Path | None = None


@dataclass(slots=True)
class SessionExtendCommand:
    store_path: Path | None
    session_id: str
    seconds: int


@dataclass(slots=True)
class SessionCleanupCommand:
    store_path: Path | None
    session_id: str
    stop_workers: bool
    delete_data: bool


@dataclass(slots=True)
class SessionListCommand:
    store_path: Path | None


@dataclass(slots=True)
class WorkerRunCommand:
    """CLI input for one worker agent started from a bootstrap task."""

    store_path: Path | None
    bootstrap_task_id: str
    max_tasks: int | None = None
    idle_timeout_seconds: float | None = None
    executor: str | None = None


class SessionCliController:
    """Coordinates session lifecycle and worker CLI operations."""

    def create(self, command: SessionCreateCommand) -> list[str]:
        settings = _settings(command.store_path)
        defaults = settings.session
        config = BackendConfig(
            workers=command.workers if command.workers is not None else defaults.workers,
            cpu=command.cpu or defaults.cpu,
            memory=command.memory or defaults.memory,
            region=command.region or defaults.region,
            task_timeout_seconds=defaults.task_timeout_seconds,
            launcher=command.launcher or defaults.launcher,
            executor=command.executor or settings.worker.executor,
            payload_serializer=command.serializer or defaults.payload_serializer,
            idle_timeout_seconds=command.idle_timeout_seconds or settings.worker.idle_timeout_seconds,
            poll_initial_seconds=settings.worker.poll_initial_seconds,
            poll_max_seconds=settings.worker.poll_max_seconds,
            scan_limit=settings.worker.scan_limit,
        )
        with _store(settings) as store:
            manager = SessionManager.create(
                store,
                config,
                launcher=_launcher(settings, store, config.launcher, log_level=command.log_level),
                retry=_retry_policy(settings),
                absolute_timeout_seconds=(
                    command.absolute_timeout_seconds or defaults.absolute_timeout_seconds
                ),
            )
            manifest = manager.manifest()

        lines = [
            f"Session created: session_id={manager.session_id} workers={config.workers} "
            f"launcher={config.launcher} executor={config.executor}",
            f"Expires at: {manifest.absolute_timeout.isoformat()}",
        ]
        lines.extend(
            f"Worker: {handle.kind}:{handle.handle_id} bootstrap={handle.bootstrap_task_id}"
            for handle in manifest.worker_handles
        )
        if not manifest.worker_handles:
            lines.extend(
                f"Bootstrap task: {keys.bootstrap_task_id(manager.session_id, index)}"
                for index in range(config.workers)
            )
        return lines

    def submit(self, command: SessionSubmitCommand) -> list[str]:
        settings = _settings(command.store_path)
        payloads = [_parse_payload(raw) for raw in command.payloads]
        if command.payload_file is not None:
            payloads.extend(_read_payload_file(command.payload_file))
        if not payloads:
            raise ValueError("No payloads given; pass --payload or --payload-file")
        with _store(settings) as store:
            manager = SessionManager.attach(store, command.session_id, retry=_retry_policy(settings))
            task_ids = [manager.submit(payload) for payload in payloads]
        return [f"Task submitted: {task_id}" for task_id in task_ids]

    def status(self, command: SessionStatusCommand) -> list[str]:
        settings = _settings(command.store_path)
        with _store(settings) as store:
            manager = SessionManager.attach(store, command.session_id, retry=_retry_policy(settings))
            status = manager.status()
            stale = (
                manager.stale_tasks(timedelta(seconds=command.stale_after_seconds))
                if command.stale_after_seconds is not None
                else []
            )

        flags = []
        if status.expired:
            flags.append("expired")
        if status.terminated:
            flags.append("terminated")
        lines = [
            f"Session {status.session_id}" + (f" ({', '.join(flags)})" if flags else ""),
            f"  Total tasks:     {status.total}",
            f"  Pending:         {status.pending}",
            f"  Claimed:         {status.claimed}",
            f"  Running:         {status.running}",
            f"  Completed:       {status.completed}",
            f"  Failed:          {status.failed}",
            f"  Progress:        {status.progress:.1f}%",
            f"  Expires at:      {status.absolute_timeout.isoformat()}",
        ]
        if command.stale_after_seconds is not None:
            lines.append(f"  Stale tasks:     {len(stale)}")
            lines.extend(
                f"    {record.task_id} state={record.state.value} owner={record.owner} "
                f"since={record.last_transition_at.isoformat()}"
                for record in stale
            )
        return lines

    def collect(self, command: SessionCollectCommand) -> list[str]:
        settings = _settings(command.store_path)
        with _store(settings) as store:
            manager = SessionManager.attach(
                store,
                command.session_id,
                retry=_retry_policy(settings),
                collect_poll_seconds=settings.session.collect_poll_seconds,
            )
            results = manager.collect(wait=command.wait, timeout=command.timeout_seconds)

        ordered = [results[task_id] for task_id in sorted(results)]
        if command.output_path is not None:
            command.output_path.parent.mkdir(parents=True, exist_ok=True)
            command.output_path.write_text(
                json.dumps([_result_to_json(result) for result in ordered], indent=2, default=str),
                "utf-8",
            )
        succeeded = sum(1 for result in ordered if result.ok)
        lines = [f"Collected {len(ordered)} results: ok={succeeded} failed={len(ordered) - succeeded}"]
        for result in ordered:
            if result.ok:
                lines.append(f"{result.task_id} ok {json.dumps(result.value, default=str)}")
            elif result.error is not None:
                lines.append(f"{result.task_id} failed {result.error.kind}: {result.error.message}")
        if command.output_path is not None:
            lines.append(f"Results written to {command.output_path}")
        return lines

    def extend(self, command: SessionExtendCommand) -> list[str]:
        settings = _settings(command.store_path)
        with _store(settings) as store:
            manager = SessionManager.attach(store, command.session_id, retry=_retry_policy(settings))
            new_timeout = manager.extend(command.seconds)
        return [f"Session {command.session_id} extended until {new_timeout.isoformat()}"]

    def cleanup(self, command: SessionCleanupCommand) -> list[str]:
        settings = _settings(command.store_path)
        with _store(settings) as store:
            manager = SessionManager.attach(store, command.session_id, retry=_retry_policy(settings))
            manager.launcher = _launcher(settings, store, manager.manifest().backend.launcher)
            report = manager.cleanup(
                stop_workers=command.stop_workers,
                delete_data=command.delete_data,
            )
        lines = [
            f"Session {command.session_id} cleaned up: stopped_workers={report.stopped_workers} "
            f"deleted_objects={report.deleted_objects}",
        ]
        lines.extend(f"Failed to stop worker {handle_id}" for handle_id in report.stop_failures)
        return lines

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = _settings(command.store_path)
        with _store(settings) as store:
            summaries = list_sessions(store, retry=_retry_policy(settings))
        if not summaries:
            return ["No sessions found"]
        lines = []
        for summary in summaries:
            state = "expired" if summary.expired else summary.state.value
            lines.append(
                f"{summary.session_id} state={state} "
                f"created={summary.created_at.isoformat()} "
                f"last_activity={summary.last_activity.isoformat()} "
                f"total={summary.stats.total} pending={summary.stats.pending} "
                f"running={summary.stats.running} completed={summary.stats.completed} "
                f"failed={summary.stats.failed}",
            )
        return lines

    def run_worker(self, command: WorkerRunCommand) -> list[str]:
        settings = _settings(command.store_path)
        with _store(settings) as store:
            agent = WorkerAgent.from_bootstrap(
                store,
                command.bootstrap_task_id,
                retry=_retry_policy(settings),
                executor=build_executor(command.executor) if command.executor else None,
                idle_timeout_seconds=command.idle_timeout_seconds,
                max_tasks=command.max_tasks,
            )
            summary = agent.run()

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} claim_conflicts={summary.claim_conflicts} "
            f"empty_polls={summary.empty_polls} "
            f"exit={summary.exit_reason.value if summary.exit_reason else 'unknown'}",
        ]


def configure_logging(level: str) -> None:
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO), format=LOG_FORMAT)


def _settings(store_path: Path | None) -> Settings:
    settings = Settings.from_env(store_path=store_path)
    settings.validate()
    return settings


def _retry_policy(settings: Settings) -> RetryPolicy:
    return RetryPolicy(
        max_attempts=settings.retry.max_attempts,
        base_delay_seconds=settings.retry.base_delay_seconds,
        max_delay_seconds=settings.retry.max_delay_seconds,
    )


def _launcher(
    settings: Settings,
    store: ObjectStore,
    name: str,
    *,
    log_level: str = "INFO",
) -> TaskLauncher:
    # Thread workers cannot outlive the CLI process.
    if name == "thread":
        return NullLauncher()
    return build_launcher(
        name,
        store=store,
        store_settings=settings.store,
        log_level=log_level,
    )


@contextmanager
def _store(settings: Settings) -> Iterator[ObjectStore]:
    store = open_store(settings.store)
    try:
        yield store
    finally:
        store.close()


def _parse_payload(raw: str) -> Any:
    try:
        return json.loads(raw)
    except json.JSONDecodeError as error:
        raise ValueError(f"Payload is not valid JSON: {error}") from error


def _read_payload_file(path: Path) -> list[Any]:
    """One JSON document per non-blank line."""

    payloads = []
    for line_no, line in enumerate(path.read_text("utf-8").splitlines(), start=1):
        if not line.strip():
            continue
        try:
            payloads.append(json.loads(line))
        except json.JSONDecodeError as error:
            raise ValueError(f"{path}:{line_no}: payload is not valid JSON: {error}") from error
    return payloads


def _result_to_json(result: TaskResult) -> dict[str, Any]:
    return {
        "task_id": result.task_id,
        "ok": result.ok,
        "value": result.value,
        "error": result.error.to_dict() if result.error is not None else None,
    }
