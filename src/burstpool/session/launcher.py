"""Launchers that start one worker per bootstrap task."""

from __future__ import annotations

import logging
import os
import signal
import subprocess
import sys
import threading
from pathlib import Path
from typing import Protocol

from burstpool.clock import Clock
from burstpool.config import StoreSettings
from burstpool.coordination.models import BackendConfig, WorkerHandle
from burstpool.store.base import ObjectStore, RetryPolicy
from burstpool.worker.agent import AgentRunSummary, WorkerAgent
from burstpool.worker.executor import TaskExecutor

logger = logging.getLogger(__name__)

PROCESS_HANDLE_KIND = "process"
THREAD_HANDLE_KIND = "thread"
_STOP_WAIT_SECONDS = 10.0
_PROC_ROOT = Path("/proc")


class TaskLauncher(Protocol):
    """Starts workers for bootstrap tasks and stops them by handle."""

    def launch(
        self,
        session_id: str,
        bootstrap_task_ids: list[str],
        spec: BackendConfig,
    ) -> list[WorkerHandle]: ...

    def stop(self, handle: WorkerHandle) -> bool: ...


class LocalProcessLauncher:
    """Spawns ``python -m burstpool.main worker run`` per bootstrap task."""

    def __init__(
        self,
        *,
        store_settings: StoreSettings,
        python_executable: str | None = None,
        log_level: str = "INFO",
        log_dir: Path | None = None,
        extra_env: dict[str, str] | None = None,
    ) -> None:
        if store_settings.backend == "memory":
            raise ValueError("Worker processes cannot share an in-memory store")
        self.store_settings = store_settings
        self.python_executable = python_executable or sys.executable
        self.log_level = log_level
        self.log_dir = log_dir
        self.extra_env = dict(extra_env or {})
        self._processes: dict[str, subprocess.Popen[bytes]] = {}

    def launch(
        self,
        session_id: str,
        bootstrap_task_ids: list[str],
        spec: BackendConfig,
    ) -> list[WorkerHandle]:
        env = self._worker_env(spec)
        handles: list[WorkerHandle] = []
        for bootstrap_id in bootstrap_task_ids:
            argv = [
                self.python_executable,
                "-m",
                "burstpool.main",
                "worker",
                "run",
                "--bootstrap-task-id",
                bootstrap_id,
                "--log-level",
                self.log_level,
            ]
            process = self._spawn(argv, env=env, bootstrap_id=bootstrap_id)
            handle = WorkerHandle(
                handle_id=str(process.pid),
                kind=PROCESS_HANDLE_KIND,
                bootstrap_task_id=bootstrap_id,
            )
            self._processes[handle.handle_id] = process
            handles.append(handle)
        logger.info("Started %d worker processes for session %s", len(handles), session_id)
        return handles

    def stop(self, handle: WorkerHandle) -> bool:
        if handle.kind != PROCESS_HANDLE_KIND:
            return False
        process = self._processes.pop(handle.handle_id, None)
        if process is not None:
            if process.poll() is not None:
                return False
            process.terminate()
            try:
                process.wait(timeout=_STOP_WAIT_SECONDS)
            except subprocess.TimeoutExpired:
                logger.warning("Worker process %s ignored SIGTERM; killing", handle.handle_id)
                process.kill()
                process.wait()
            return True
        if not _runs_bootstrap_task(handle):
            logger.info(
                "Process %s is not the worker for %s; leaving it alone",
                handle.handle_id,
                handle.bootstrap_task_id,
            )
            return False
        try:
            os.kill(int(handle.handle_id), signal.SIGTERM)
        except ProcessLookupError:
            return False
        return True

    def _spawn(
        self,
        argv: list[str],
        *,
        env: dict[str, str],
        bootstrap_id: str,
    ) -> subprocess.Popen[bytes]:
        if self.log_dir is None:
            return subprocess.Popen(  # noqa: S603
                argv,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                start_new_session=True,
            )
        self.log_dir.mkdir(parents=True, exist_ok=True)
        with (self.log_dir / f"{bootstrap_id}.log").open("ab") as log_handle:
            return subprocess.Popen(  # noqa: S603
                argv,
                env=env,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                start_new_session=True,
            )

    def _worker_env(self, spec: BackendConfig) -> dict[str, str]:
        env = os.environ.copy()
        env["BURSTPOOL_STORE_BACKEND"] = self.store_settings.backend
        env["BURSTPOOL_STORE_PATH"] = str(Path(self.store_settings.path).resolve())
        env["BURSTPOOL_STORE_ENDPOINT"] = self.store_settings.endpoint
        env["BURSTPOOL_STORE_BUCKET"] = self.store_settings.bucket
        if self.store_settings.auth_token:
            env["BURSTPOOL_STORE_AUTH_TOKEN"] = self.store_settings.auth_token
        env["BURSTPOOL_WORKER_EXECUTOR"] = spec.executor
        env.update({str(key): str(value) for key, value in spec.launch_params.get("env", {}).items()})
        env.update(self.extra_env)
        return env


def _runs_bootstrap_task(handle: WorkerHandle) -> bool:
    """Whether pid ``handle_id`` still runs a worker for the handle's bootstrap task."""

    try:
        cmdline = (_PROC_ROOT / handle.handle_id / "cmdline").read_bytes()
    except OSError:
        return False
    argv = cmdline.decode(errors="replace").split("\0")
    return "burstpool.main" in argv and handle.bootstrap_task_id in argv


class ThreadLauncher:
    """Runs each worker agent on a daemon thread of the current process."""

    def __init__(
        self,
        store: ObjectStore,
        *,
        clock: Clock | None = None,
        retry: RetryPolicy | None = None,
        executor: TaskExecutor | None = None,
        idle_timeout_seconds: float | None = None,
    ) -> None:
        self.store = store
        self.clock = clock
        self.retry = retry
        self.executor = executor
        self.idle_timeout_seconds = idle_timeout_seconds
        self.summaries: dict[str, AgentRunSummary] = {}
        self.errors: dict[str, BaseException] = {}
        self._agents: dict[str, WorkerAgent] = {}
        self._threads: dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def launch(
        self,
        session_id: str,
        bootstrap_task_ids: list[str],
        spec: BackendConfig,
    ) -> list[WorkerHandle]:
        handles: list[WorkerHandle] = []
        for bootstrap_id in bootstrap_task_ids:
            agent = WorkerAgent.from_bootstrap(
                self.store,
                bootstrap_id,
                clock=self.clock,
                retry=self.retry,
                executor=self.executor,
                idle_timeout_seconds=self.idle_timeout_seconds,
            )
            handle_id = f"thread-{bootstrap_id}"
            thread = threading.Thread(
                target=self._run_agent,
                args=(handle_id, agent),
                name=handle_id,
                daemon=True,
            )
            with self._lock:
                self._agents[handle_id] = agent
                self._threads[handle_id] = thread
            thread.start()
            handles.append(
                WorkerHandle(
                    handle_id=handle_id,
                    kind=THREAD_HANDLE_KIND,
                    bootstrap_task_id=bootstrap_id,
                ),
            )
        logger.info(
            "Started %d worker threads for session %s (cpu=%d)",
            len(handles),
            session_id,
            spec.cpu,
        )
        return handles

    def stop(self, handle: WorkerHandle) -> bool:
        with self._lock:
            agent = self._agents.get(handle.handle_id)
            thread = self._threads.get(handle.handle_id)
        if agent is None or thread is None or not thread.is_alive():
            return False
        agent.request_stop()
        return True

    def join(self, timeout: float | None = None) -> bool:
        """Wait for all threads; ``True`` when every one has exited."""

        with self._lock:
            threads = list(self._threads.values())
        for thread in threads:
            thread.join(timeout)
        return not any(thread.is_alive() for thread in threads)

    def _run_agent(self, handle_id: str, agent: WorkerAgent) -> None:
        try:
            summary = agent.run()
        except Exception as error:
            logger.exception("Worker thread %s crashed", handle_id)
            with self._lock:
                self.errors[handle_id] = error
            return
        with self._lock:
            self.summaries[handle_id] = summary


class NullLauncher:
    """Starts nothing; workers are run externally with the bootstrap ids."""

    def launch(
        self,
        session_id: str,
        bootstrap_task_ids: list[str],
        spec: BackendConfig,
    ) -> list[WorkerHandle]:
        logger.info(
            "Session %s expects %d externally started workers: %s",
            session_id,
            len(bootstrap_task_ids),
            ", ".join(bootstrap_task_ids),
        )
        return []

    def stop(self, handle: WorkerHandle) -> bool:
        return False


def build_launcher(
    name: str,
    *,
    store: ObjectStore,
    store_settings: StoreSettings,
    log_level: str = "INFO",
) -> TaskLauncher:
    if name == "process":
        return LocalProcessLauncher(store_settings=store_settings, log_level=log_level)
    if name == "thread":
        return ThreadLauncher(store)
    if name == "none":
        return NullLauncher()
    raise ValueError(f"Unsupported launcher: {name!r}")
