from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Any

from workflow_creator.context import ContextView
from workflow_creator.models import Task


class TaskExecutionError(RuntimeError):
    """Raised when a worker fails to execute a task."""

    def __init__(
        self,
        message: str,
        *,
        worker: str | None = None,
        exit_code: int | None = None,
        transient: bool = True,
    ) -> None:
        super().__init__(message)
        self.worker = worker
        self.exit_code = exit_code
        self.transient = transient


class TaskTimeoutError(TaskExecutionError):
    """Raised when a worker call exceeds the configured timeout."""


class WorkerProcessError(TaskExecutionError):
    """Raised when a worker process cannot be started or talked to."""


class WorkerBackend(ABC):
    @abstractmethod
    async def run(self, task: Task, context: ContextView) -> Mapping[str, Any]:
        """Execute ``task`` and return its output fragment."""
