from workflow_creator.workers.base import (
    TaskExecutionError,
    TaskTimeoutError,
    WorkerBackend,
    WorkerProcessError,
)
from workflow_creator.workers.command import CommandWorker
from workflow_creator.workers.function import FunctionWorker
from workflow_creator.workers.resilient import RetryPolicy, call_worker, is_transient_error

__all__ = [
    "CommandWorker",
    "FunctionWorker",
    "RetryPolicy",
    "TaskExecutionError",
    "TaskTimeoutError",
    "WorkerBackend",
    "WorkerProcessError",
    "call_worker",
    "is_transient_error",
]
