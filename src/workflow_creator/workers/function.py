from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from workflow_creator.context import ContextView
from workflow_creator.models import Task
from workflow_creator.workers.base import WorkerBackend

WorkerFunction = Callable[
    [Task, ContextView], Mapping[str, Any] | Awaitable[Mapping[str, Any]] | None
]


class FunctionWorker(WorkerBackend):
    """Adapts a plain or async callable to the worker interface."""

    def __init__(self, func: WorkerFunction) -> None:
        self.func = func

    async def run(self, task: Task, context: ContextView) -> Mapping[str, Any]:
        result = self.func(task, context)
        if inspect.isawaitable(result):
            result = await result
        return result or {}
