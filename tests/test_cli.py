from __future__ import annotations

import json
import re
from pathlib import Path

import allure
import pytest
from click.testing import CliRunner

from burstpool import __version__
from burstpool.main import burstpool

pytestmark = [
    allure.epic("CLI"),
    allure.feature("Session, Worker and Quota Commands"),
]


@pytest.fixture()
def fast_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("BURSTPOOL_STORE_BACKEND", "sqlite")
    monkeypatch.setenv("BURSTPOOL_RETRY_MAX_ATTEMPTS", "1")
    monkeypatch.setenv("BURSTPOOL_WORKER_POLL_INITIAL_SECONDS", "0.01")
    monkeypatch.setenv("BURSTPOOL_WORKER_POLL_MAX_SECONDS", "0.02")
    monkeypatch.setenv("BURSTPOOL_WORKER_IDLE_TIMEOUT_SECONDS", "0.2")
    monkeypatch.setenv("BURSTPOOL_WORKER_EXECUTOR", "import_path")
    monkeypatch.setenv("BURSTPOOL_QUOTA_CAPACITY", "100")
    monkeypatch.delenv("BURSTPOOL_QUOTA_AUTO_REQUEST_INCREASE", raising=False)


def _invoke(runner: CliRunner, *args: str) -> str:
    result = runner.invoke(burstpool, list(args))
    assert result.exit_code == 0, result.output
    return result.output


def test_session_lifecycle_with_external_worker(tmp_path: Path, fast_env) -> None:
    runner = CliRunner()
    db = str(tmp_path / "cli.db")

    created = _invoke(runner, "session", "create", "--store-path", db, "--workers", "1",
                      "--launcher", "none")
    session_id = re.search(r"session_id=(\S+)", created).group(1)
    bootstrap_id = re.search(r"Bootstrap task: (\S+)", created).group(1)

    submitted = _invoke(
        runner,
        "session", "submit", "--store-path", db, "--session-id", session_id,
        "--payload", json.dumps({"callable": "operator:add", "args": [2, 3]}),
        "--payload", json.dumps({"callable": "operator:truediv", "args": [1, 0]}),
    )
    assert submitted.count("Task submitted: task-") == 2

    ran = _invoke(
        runner,
        "worker", "run", "--store-path", db, "--bootstrap-task-id", bootstrap_id,
        "--max-tasks", "2",
    )
    assert "processed=2 completed=1 failed=1" in ran
    assert "exit=max_tasks" in ran

    status = _invoke(runner, "session", "status", "--store-path", db, "--session-id", session_id)
    assert "Total tasks:     2" in status
    assert "Progress:        50.0%" in status

    output = tmp_path / "results.json"
    collected = _invoke(
        runner,
        "session", "collect", "--store-path", db, "--session-id", session_id,
        "--output", str(output),
    )
    assert "Collected 2 results: ok=1 failed=1" in collected
    assert "ZeroDivisionError" in collected
    rows = json.loads(output.read_text("utf-8"))
    assert sorted(row["value"] for row in rows if row["ok"]) == [5]

    listed = _invoke(runner, "session", "list", "--store-path", db)
    assert session_id in listed

    extended = _invoke(
        runner, "session", "extend", "--store-path", db, "--session-id", session_id,
        "--seconds", "60",
    )
    assert "extended until" in extended

    cleaned = _invoke(
        runner, "session", "cleanup", "--store-path", db, "--session-id", session_id,
        "--delete-data",
    )
    assert "stopped_workers=0" in cleaned

    missing = runner.invoke(
        burstpool, ["session", "status", "--store-path", db, "--session-id", session_id],
    )
    assert missing.exit_code == 1
    assert "Session not found" in missing.output


def test_submit_rejects_invalid_json(tmp_path: Path, fast_env) -> None:
    runner = CliRunner()
    db = str(tmp_path / "cli.db")
    created = _invoke(runner, "session", "create", "--store-path", db, "--workers", "0",
                      "--launcher", "none")
    session_id = re.search(r"session_id=(\S+)", created).group(1)

    result = runner.invoke(
        burstpool,
        ["session", "submit", "--store-path", db, "--session-id", session_id, "--payload", "{"],
    )

    assert result.exit_code == 1
    assert "not valid JSON" in result.output


def test_submit_reads_payload_file(tmp_path: Path, fast_env) -> None:
    runner = CliRunner()
    db = str(tmp_path / "cli.db")
    payloads = tmp_path / "payloads.jsonl"
    payloads.write_text('{"callable": "math:sqrt", "args": [16]}\n\n[1, 2]\n', "utf-8")
    created = _invoke(runner, "session", "create", "--store-path", db, "--workers", "0",
                      "--launcher", "none")
    session_id = re.search(r"session_id=(\S+)", created).group(1)

    submitted = _invoke(
        runner, "session", "submit", "--store-path", db, "--session-id", session_id,
        "--payload-file", str(payloads),
    )

    assert submitted.count("Task submitted:") == 2


def test_quota_plan_reports_waves(fast_env) -> None:
    runner = CliRunner()

    limited = _invoke(runner, "quota", "plan", "--workers", "100", "--capacity", "25")
    single = _invoke(runner, "quota", "plan", "--workers", "10")
    blocked = _invoke(
        runner, "quota", "plan", "--workers", "5", "--units-per-worker", "4", "--capacity", "3",
    )

    assert "4 waves of up to 25 workers (25, 25, 25, 25)" in limited
    assert "Suggested vcpu quota: 200" in limited
    assert "1 wave of 10 workers" in single
    assert "Cannot run" in blocked
    assert "Suggested vcpu quota: 100" in blocked


def test_quota_plan_files_request_when_enabled(fast_env, monkeypatch) -> None:
    monkeypatch.setenv("BURSTPOOL_QUOTA_AUTO_REQUEST_INCREASE", "true")

    output = _invoke(CliRunner(), "quota", "plan", "--workers", "150")

    assert re.search(r"Quota increase requested: id=quota-\w+ vcpu=200", output)


def test_quota_request(fast_env) -> None:
    runner = CliRunner()

    covered = _invoke(runner, "quota", "request", "--units-needed", "50")
    raised = _invoke(runner, "quota", "request", "--units-needed", "400")

    assert "already covers 100" in covered
    assert re.search(r"Quota increase requested: id=quota-\w+ vcpu=500", raised)


def test_version_option() -> None:
    result = CliRunner().invoke(burstpool, ["--version"])

    assert result.exit_code == 0
    assert __version__ in result.output
