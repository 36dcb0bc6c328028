from __future__ import annotations

import asyncio
import json
import os
from collections.abc import Callable, Mapping, Sequence
from pathlib import Path
from typing import Any

from workflow_creator.context import ContextView
from workflow_creator.models import Task
from workflow_creator.workers.base import TaskExecutionError, WorkerBackend, WorkerProcessError


class CommandWorker(WorkerBackend):
    """Runs an external command per task.

    The task and its visible context are written to stdin as JSON. The last
    stdout line holding a JSON object becomes the output fragment; an object
    with an ``error`` key reports a failure, ``"transient": false`` marks it
    permanent.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        name: str = "command",
        working_directory: Path | None = None,
        env: Mapping[str, str] | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        if not command:
            raise ValueError("CommandWorker requires a non-empty command.")
        self.command = [str(part) for part in command]
        self.name = name
        self.working_directory = working_directory
        self.env = dict(env or {})
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    @staticmethod
    def build_payload(task: Task, context: ContextView) -> dict[str, Any]:
        return {"task": task.to_dict(), "context": context.to_dict()}

    @staticmethod
    def _parse_output(stdout: str) -> dict[str, Any] | None:
        for raw_line in reversed(stdout.splitlines()):
            line = raw_line.strip()
            if not (line.startswith("{") and line.endswith("}")):
                continue
            try:
                parsed = json.loads(line)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                return parsed
        return None

    def _process_env(self) -> dict[str, str] | None:
        if not self.env:
            return None
        merged = os.environ.copy()
        merged.update(self.env)
        return merged

    async def run(self, task: Task, context: ContextView) -> Mapping[str, Any]:
        payload = json.dumps(self.build_payload(task, context), ensure_ascii=False, default=str)
        self._emit(
            {
                "event": "worker_process_start",
                "worker": self.name,
                "task_id": task.id,
                "command": self.command[:4],
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=self._process_env(),
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise WorkerProcessError(
                f"Worker command not found: {self.command[0]}",
                worker=self.name,
                transient=False,
            ) from exc

        try:
            stdout_raw, stderr_raw = await process.communicate(payload.encode("utf-8"))
        except asyncio.CancelledError:
            try:
                process.kill()
            except ProcessLookupError:
                pass
            self._emit({"event": "worker_process_cancelled", "worker": self.name})
            raise

        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace").strip()
        parsed = self._parse_output(stdout)
        return_code = process.returncode
        self._emit(
            {
                "event": "worker_process_exit",
                "worker": self.name,
                "task_id": task.id,
                "exit_code": return_code,
                "stderr": stderr[:400],
            }
        )

        if parsed is not None and "error" in parsed:
            raise TaskExecutionError(
                f"Worker {self.name} reported error: {parsed['error']}",
                worker=self.name,
                exit_code=return_code,
                transient=bool(parsed.get("transient", True)),
            )
        if return_code != 0:
            raise TaskExecutionError(
                f"Worker {self.name} failed with exit code {return_code}: {stderr}",
                worker=self.name,
                exit_code=return_code,
                transient=True,
            )
        if parsed is None:
            return {"stdout": stdout.strip()[-4000:]}
        return parsed
