from __future__ import annotations

import sys

import allure
import pytest

from burstpool.worker.executor import (
    CallableExecutor,
    CommandExecutor,
    ImportPathExecutor,
    PayloadError,
    build_executor,
    resolve_callable,
    run_executor,
)

pytestmark = [
    allure.epic("Worker Agent"),
    allure.feature("Executors"),
]


def test_callable_executor_applies_function() -> None:
    outcome = run_executor(CallableExecutor(lambda value: value * 2), 21)

    assert outcome.ok
    assert outcome.value == 42


def test_exceptions_become_task_errors() -> None:
    def _boom(_: object) -> None:
        raise ZeroDivisionError("division by zero")

    outcome = run_executor(CallableExecutor(_boom), None)

    assert not outcome.ok
    assert outcome.error.kind == "ZeroDivisionError"
    assert outcome.error.message == "division by zero"
    assert "_boom" in outcome.error.traceback


def test_import_path_executor_calls_target_with_args() -> None:
    executor = ImportPathExecutor()

    assert executor.execute({"callable": "operator:add", "args": [2, 3]}) == 5
    assert executor.execute({"callable": "builtins:max", "args": [[1, 9, 4]]}) == 9
    assert executor.execute(
        {"callable": "builtins:sorted", "args": [[3, 1]], "kwargs": {"reverse": True}},
    ) == [3, 1]


@pytest.mark.parametrize(
    "payload",
    [
        "operator:add",
        {"args": [1]},
        {"callable": "operator:add", "args": "12"},
    ],
)
def test_import_path_executor_rejects_malformed_payloads(payload: object) -> None:
    with pytest.raises(PayloadError):
        ImportPathExecutor().execute(payload)


def test_resolve_callable_requires_module_and_attribute() -> None:
    assert resolve_callable("os.path:join")("a", "b").endswith("b")
    with pytest.raises(PayloadError, match="expected 'module:function'"):
        resolve_callable("os.path.join")
    with pytest.raises(ModuleNotFoundError):
        resolve_callable("no_such_module_xyz:run")


def test_command_executor_captures_output() -> None:
    result = CommandExecutor().execute({"argv": [sys.executable, "-c", "print('hello')"]})

    assert result["returncode"] == 0
    assert result["stdout"].strip() == "hello"


def test_command_executor_non_zero_exit_fails_task() -> None:
    payload = {"argv": [sys.executable, "-c", "import sys; sys.exit('nope')"]}

    outcome = run_executor(CommandExecutor(), payload)

    assert not outcome.ok
    assert outcome.error.kind == "CommandFailedError"
    assert "nope" in outcome.error.message


def test_command_executor_timeout_fails_task() -> None:
    payload = {
        "argv": [sys.executable, "-c", "import time; time.sleep(5)"],
        "timeout_seconds": 0.2,
    }

    outcome = run_executor(CommandExecutor(), payload)

    assert not outcome.ok
    assert outcome.error.kind == "TimeoutExpired"


def test_build_executor_by_name() -> None:
    assert isinstance(build_executor("import_path"), ImportPathExecutor)
    command = build_executor("command", task_timeout_seconds=30)
    assert isinstance(command, CommandExecutor)
    assert command.default_timeout_seconds == 30
    with pytest.raises(ValueError, match="Unsupported executor"):
        build_executor("lambda")
