import asyncio
import sys
from pathlib import Path
from typing import Any

import pytest

from workflow_creator.config import ExecutionConfig
from workflow_creator.context import ContextView, ExecutionContext
from workflow_creator.models import Task
from workflow_creator.workers import (
    CommandWorker,
    FunctionWorker,
    RetryPolicy,
    TaskExecutionError,
    TaskTimeoutError,
    WorkerProcessError,
    call_worker,
    is_transient_error,
)

ECHO_SCRIPT = """
import json, sys
payload = json.load(sys.stdin)
print("progress line")
print(json.dumps({"task": payload["task"]["id"], "seed": payload["context"]["inputs"]["seed"]}))
"""

ERROR_SCRIPT = """
import json, sys
sys.stdin.read()
print(json.dumps({"error": "bad input", "transient": False}))
"""

CRASH_SCRIPT = """
import sys
sys.stdin.read()
sys.stderr.write("exploded")
sys.exit(3)
"""


def _view(task_id: str = "t") -> ContextView:
    return ExecutionContext({"seed": 7}).view(task_id, [])


def test_function_worker_accepts_sync_and_async_callables() -> None:
    def sync_func(task: Task, view: ContextView) -> dict[str, Any]:
        return {"id": task.id, "seed": view["seed"]}

    async def async_func(task: Task, view: ContextView) -> dict[str, Any]:
        await asyncio.sleep(0)
        return {"async": True}

    task = Task(id="t")

    assert asyncio.run(FunctionWorker(sync_func).run(task, _view())) == {"id": "t", "seed": 7}
    assert asyncio.run(FunctionWorker(async_func).run(task, _view())) == {"async": True}
    assert asyncio.run(FunctionWorker(lambda task, view: None).run(task, _view())) == {}


def test_call_worker_times_out_as_transient_error() -> None:
    async def slow(task: Task, view: ContextView) -> dict[str, Any]:
        await asyncio.sleep(5)
        return {}

    with pytest.raises(TaskTimeoutError) as excinfo:
        asyncio.run(
            call_worker(
                FunctionWorker(slow), Task(id="t"), _view(), worker_name="w", timeout_seconds=0.05
            )
        )

    assert excinfo.value.transient is True
    assert excinfo.value.worker == "w"


def test_call_worker_wraps_non_mapping_output() -> None:
    output = asyncio.run(
        call_worker(
            FunctionWorker(lambda task, view: 42),  # type: ignore[arg-type, return-value]
            Task(id="t"),
            _view(),
            worker_name="w",
            timeout_seconds=1.0,
        )
    )

    assert output == {"value": 42}


def test_transient_classification() -> None:
    assert is_transient_error(TaskExecutionError("x")) is True
    assert is_transient_error(TaskExecutionError("x", transient=False)) is False
    assert is_transient_error(ConnectionError()) is True
    assert is_transient_error(ValueError("bad")) is False


def test_retry_policy_backoff_is_exponential() -> None:
    policy = RetryPolicy.from_config(
        ExecutionConfig(max_retries=3, retry_backoff_seconds=0.5, backoff_multiplier=2.0)
    )

    assert policy.max_retries == 3
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [0.5, 1.0, 2.0]


def test_command_worker_reads_last_json_line(tmp_path: Path) -> None:
    events: list[dict[str, Any]] = []
    worker = CommandWorker(
        [sys.executable, "-c", ECHO_SCRIPT],
        name="echo",
        working_directory=tmp_path,
        event_hook=events.append,
    )

    output = asyncio.run(worker.run(Task(id="t1"), _view("t1")))

    assert output == {"task": "t1", "seed": 7}
    assert [event["event"] for event in events] == ["worker_process_start", "worker_process_exit"]
    assert events[-1]["exit_code"] == 0


def test_command_worker_reported_error_can_be_permanent() -> None:
    worker = CommandWorker([sys.executable, "-c", ERROR_SCRIPT], name="err")

    with pytest.raises(TaskExecutionError) as excinfo:
        asyncio.run(worker.run(Task(id="t"), _view()))

    assert excinfo.value.transient is False
    assert "bad input" in str(excinfo.value)


def test_command_worker_nonzero_exit_is_transient() -> None:
    worker = CommandWorker([sys.executable, "-c", CRASH_SCRIPT], name="crash")

    with pytest.raises(TaskExecutionError) as excinfo:
        asyncio.run(worker.run(Task(id="t"), _view()))

    assert excinfo.value.transient is True
    assert excinfo.value.exit_code == 3
    assert "exploded" in str(excinfo.value)


def test_command_worker_missing_binary_is_permanent() -> None:
    worker = CommandWorker(["definitely-not-a-real-binary-wfc"], name="ghost")

    with pytest.raises(WorkerProcessError) as excinfo:
        asyncio.run(worker.run(Task(id="t"), _view()))

    assert excinfo.value.transient is False


def test_command_worker_requires_command() -> None:
    with pytest.raises(ValueError):
        CommandWorker([])
