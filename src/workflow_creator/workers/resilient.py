from __future__ import annotations

import asyncio
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from workflow_creator.config import ExecutionConfig
from workflow_creator.context import ContextView
from workflow_creator.models import Task
from workflow_creator.workers.base import TaskExecutionError, TaskTimeoutError, WorkerBackend

TransientClassifier = Callable[[BaseException], bool]


def is_transient_error(exc: BaseException) -> bool:
    if isinstance(exc, TaskExecutionError):
        return exc.transient
    return isinstance(exc, (TimeoutError, ConnectionError))


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_seconds: float = 0.5
    multiplier: float = 2.0
    timeout_seconds: float = 300.0

    @classmethod
    def from_config(cls, config: ExecutionConfig) -> RetryPolicy:
        return cls(
            max_retries=max(0, int(config.max_retries)),
            backoff_seconds=max(0.0, float(config.retry_backoff_seconds)),
            multiplier=max(1.0, float(config.backoff_multiplier)),
            timeout_seconds=max(0.001, float(config.task_timeout_seconds)),
        )

    def delay_for(self, retry: int) -> float:
        """Backoff before the ``retry``-th retry (1-based)."""
        return self.backoff_seconds * (self.multiplier ** (retry - 1))


async def call_worker(
    backend: WorkerBackend,
    task: Task,
    context: ContextView,
    *,
    worker_name: str,
    timeout_seconds: float,
) -> dict[str, Any]:
    try:
        payload = await asyncio.wait_for(backend.run(task, context), timeout=timeout_seconds)
    except TimeoutError as exc:
        raise TaskTimeoutError(
            f"Worker {worker_name} timed out after {timeout_seconds:.1f}s",
            worker=worker_name,
            transient=True,
        ) from exc
    if payload is None:
        return {}
    if not isinstance(payload, Mapping):
        return {"value": payload}
    return dict(payload)
