"""CLI entrypoint for burstpool."""

from collections.abc import Callable
from pathlib import Path

import rich_click as click

from burstpool import __version__
from burstpool.config import SUPPORTED_EXECUTORS, SUPPORTED_SERIALIZERS
from burstpool.errors import BurstpoolError
from burstpool.scheduling.controllers import (
    QuotaCliController,
    QuotaPlanCommand,
    QuotaRequestCommand,
)
from burstpool.session.controllers import (
    SessionCleanupCommand,
    SessionCliController,
    SessionCollectCommand,
    SessionCreateCommand,
    SessionExtendCommand,
    SessionListCommand,
    SessionStatusCommand,
    SessionSubmitCommand,
    WorkerRunCommand,
    configure_logging,
)

click.rich_click.USE_MARKDOWN = True
SESSION_CONTROLLER = SessionCliController()
QUOTA_CONTROLLER = QuotaCliController()

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]

store_path_option = click.option(
    "--store-path",
    type=click.Path(path_type=Path),
    default=None,
    help="SQLite store path; overrides BURSTPOOL_STORE_PATH.",
)
session_id_option = click.option("--session-id", required=True, help="Session id.")


@click.group()
@click.version_option(version=__version__, prog_name="burstpool")
def burstpool() -> None:
    """Burst a batch of tasks onto short-lived workers coordinated through an object store."""


@burstpool.group()
def session() -> None:
    """Session lifecycle commands."""


@session.command("create")
@store_path_option
@click.option("--workers", type=click.IntRange(min=0), default=None, help="Number of workers.")
@click.option("--cpu", type=click.IntRange(min=1), default=None, help="CPU units per worker.")
@click.option("--memory", default=None, help="Memory per worker, for example 8GB.")
@click.option("--region", default=None, help="Region label recorded in the manifest.")
@click.option(
    "--launcher",
    type=click.Choice(["process", "none"], case_sensitive=False),
    default=None,
    help="Start local worker processes, or none for externally started workers.",
)
@click.option(
    "--executor",
    type=click.Choice(list(SUPPORTED_EXECUTORS), case_sensitive=False),
    default=None,
    help="How workers run task payloads.",
)
@click.option(
    "--serializer",
    type=click.Choice(list(SUPPORTED_SERIALIZERS), case_sensitive=False),
    default=None,
    help="Payload and result serializer.",
)
@click.option(
    "--timeout-seconds",
    "absolute_timeout_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Absolute session lifetime.",
)
@click.option(
    "--idle-timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Workers exit after this long without a task.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
    help="Log level passed to launched workers.",
)
def session_create(  # noqa: PLR0913
    store_path: Path | None,
    workers: int | None,
    cpu: int | None,
    memory: str | None,
    region: str | None,
    launcher: str | None,
    executor: str | None,
    serializer: str | None,
    absolute_timeout_seconds: int | None,
    idle_timeout_seconds: float | None,
    log_level: str,
) -> None:
    """Create a session and launch its workers."""

    _emit(
        lambda: SESSION_CONTROLLER.create(
            SessionCreateCommand(
                store_path=store_path,
                workers=workers,
                cpu=cpu,
                memory=memory,
                region=region,
                launcher=launcher.lower() if launcher else None,
                executor=executor.lower() if executor else None,
                serializer=serializer.lower() if serializer else None,
                absolute_timeout_seconds=absolute_timeout_seconds,
                idle_timeout_seconds=idle_timeout_seconds,
                log_level=log_level.upper(),
            ),
        ),
    )


@session.command("submit")
@store_path_option
@session_id_option
@click.option(
    "--payload",
    "payloads",
    multiple=True,
    help="Task payload as a JSON document. Can be repeated.",
)
@click.option(
    "--payload-file",
    type=click.Path(path_type=Path, exists=True, dir_okay=False),
    default=None,
    help="File with one JSON payload per line.",
)
def session_submit(
    store_path: Path | None,
    session_id: str,
    payloads: tuple[str, ...],
    payload_file: Path | None,
) -> None:
    """Submit tasks to a session."""

    _emit(
        lambda: SESSION_CONTROLLER.submit(
            SessionSubmitCommand(
                store_path=store_path,
                session_id=session_id,
                payloads=payloads,
                payload_file=payload_file,
            ),
        ),
    )


@session.command("status")
@store_path_option
@session_id_option
@click.option(
    "--stale-after",
    "stale_after_seconds",
    type=click.IntRange(min=1),
    default=None,
    help="Also list claimed or running tasks unchanged for this many seconds.",
)
def session_status(
    store_path: Path | None,
    session_id: str,
    stale_after_seconds: int | None,
) -> None:
    """Show task counts and progress."""

    _emit(
        lambda: SESSION_CONTROLLER.status(
            SessionStatusCommand(
                store_path=store_path,
                session_id=session_id,
                stale_after_seconds=stale_after_seconds,
            ),
        ),
    )


@session.command("collect")
@store_path_option
@session_id_option
@click.option("--wait/--no-wait", default=False, show_default=True, help="Wait for all tasks.")
@click.option(
    "--timeout-seconds",
    type=click.FloatRange(min=0),
    default=3600.0,
    show_default=True,
    help="Give up waiting after this long and print partial results.",
)
@click.option(
    "--output",
    "output_path",
    type=click.Path(path_type=Path, dir_okay=False),
    default=None,
    help="Also write results as JSON.",
)
def session_collect(
    store_path: Path | None,
    session_id: str,
    wait: bool,
    timeout_seconds: float,
    output_path: Path | None,
) -> None:
    """Collect results of finished tasks."""

    _emit(
        lambda: SESSION_CONTROLLER.collect(
            SessionCollectCommand(
                store_path=store_path,
                session_id=session_id,
                wait=wait,
                timeout_seconds=timeout_seconds,
                output_path=output_path,
            ),
        ),
    )


@session.command("extend")
@store_path_option
@session_id_option
@click.option(
    "--seconds",
    type=click.IntRange(min=1),
    default=3600,
    show_default=True,
    help="New lifetime counted from now.",
)
def session_extend(store_path: Path | None, session_id: str, seconds: int) -> None:
    """Extend the session's absolute timeout."""

    _emit(
        lambda: SESSION_CONTROLLER.extend(
            SessionExtendCommand(store_path=store_path, session_id=session_id, seconds=seconds),
        ),
    )


@session.command("cleanup")
@store_path_option
@session_id_option
@click.option(
    "--stop-workers/--keep-workers",
    default=True,
    show_default=True,
    help="Stop recorded worker processes.",
)
@click.option(
    "--delete-data",
    is_flag=True,
    default=False,
    help="Delete the manifest, tasks, results and bootstrap pointers.",
)
def session_cleanup(
    store_path: Path | None,
    session_id: str,
    stop_workers: bool,
    delete_data: bool,
) -> None:
    """Terminate a session."""

    _emit(
        lambda: SESSION_CONTROLLER.cleanup(
            SessionCleanupCommand(
                store_path=store_path,
                session_id=session_id,
                stop_workers=stop_workers,
                delete_data=delete_data,
            ),
        ),
    )


@session.command("list")
@store_path_option
def session_list(store_path: Path | None) -> None:
    """List sessions in the store."""

    _emit(lambda: SESSION_CONTROLLER.list_sessions(SessionListCommand(store_path=store_path)))


@burstpool.group()
def worker() -> None:
    """Worker commands."""


@worker.command("run")
@store_path_option
@click.option("--bootstrap-task-id", required=True, help="Bootstrap task id of this worker.")
@click.option("--max-tasks", type=click.IntRange(min=1), default=None, help="Exit after N tasks.")
@click.option(
    "--idle-timeout-seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Override the session's idle timeout.",
)
@click.option(
    "--executor",
    type=click.Choice(list(SUPPORTED_EXECUTORS), case_sensitive=False),
    default=None,
    help="Override the session's executor.",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default="INFO",
    show_default=True,
)
def worker_run(  # noqa: PLR0913
    store_path: Path | None,
    bootstrap_task_id: str,
    max_tasks: int | None,
    idle_timeout_seconds: float | None,
    executor: str | None,
    log_level: str,
) -> None:
    """Run one worker agent until it goes idle or its session ends."""

    configure_logging(log_level)
    _emit(
        lambda: SESSION_CONTROLLER.run_worker(
            WorkerRunCommand(
                store_path=store_path,
                bootstrap_task_id=bootstrap_task_id,
                max_tasks=max_tasks,
                idle_timeout_seconds=idle_timeout_seconds,
                executor=executor.lower() if executor else None,
            ),
        ),
    )


@burstpool.group()
def quota() -> None:
    """Quota planning commands."""


@quota.command("plan")
@click.option("--workers", type=click.IntRange(min=1), required=True, help="Workers wanted.")
@click.option(
    "--units-per-worker",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Capacity units each worker uses.",
)
@click.option(
    "--capacity",
    type=click.IntRange(min=0),
    default=None,
    help="Available units; defaults to BURSTPOOL_QUOTA_CAPACITY.",
)
@click.option("--resource-class", default=None, help="Quota resource class.")
@click.option("--local-cpu", is_flag=True, default=False, help="Use this machine's CPU count.")
def quota_plan(
    workers: int,
    units_per_worker: int,
    capacity: int | None,
    resource_class: str | None,
    local_cpu: bool,
) -> None:
    """Show how many waves a run needs under the available quota."""

    _emit(
        lambda: QUOTA_CONTROLLER.plan(
            QuotaPlanCommand(
                workers=workers,
                units_per_worker=units_per_worker,
                capacity=capacity,
                resource_class=resource_class,
                local_cpu=local_cpu,
            ),
        ),
    )


@quota.command("request")
@click.option("--units-needed", type=click.IntRange(min=1), required=True)
@click.option("--resource-class", default=None, help="Quota resource class.")
def quota_request(units_needed: int, resource_class: str | None) -> None:
    """Request a quota increase sized for the given need."""

    _emit(
        lambda: QUOTA_CONTROLLER.request(
            QuotaRequestCommand(units_needed=units_needed, resource_class=resource_class),
        ),
    )


def _emit(call: Callable[[], list[str]]) -> None:
    try:
        lines = call()
    except (BurstpoolError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    burstpool()
