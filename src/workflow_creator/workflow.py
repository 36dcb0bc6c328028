from __future__ import annotations

import json
import logging
import tomllib
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from workflow_creator.capabilities import CapabilityIndex, CapabilitySnapshot
from workflow_creator.config import AGGREGATION_STRATEGIES, WorkflowConfig
from workflow_creator.executor import ExecutorEventHook, PhaseCoordinator
from workflow_creator.graph import TaskGraph, build_task_graph
from workflow_creator.matcher import WorkerMatcher
from workflow_creator.models import Assignment, Task, Worker, WorkflowResult
from workflow_creator.patterns import PatternClassification, classify
from workflow_creator.workers.base import WorkerBackend
from workflow_creator.workers.command import CommandWorker

logger = logging.getLogger(__name__)


class WorkflowFileError(RuntimeError):
    """Raised when a workflow file cannot be read or is malformed."""


@dataclass(frozen=True, slots=True)
class WorkflowPlan:
    graph: TaskGraph
    classification: PatternClassification
    assignments: dict[str, Assignment]
    snapshot: CapabilitySnapshot

    @property
    def unassignable(self) -> list[str]:
        return [
            task_id
            for task_id in self.graph.order
            if not self.assignments[task_id].is_assignable
        ]

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.classification.pattern,
            "order": list(self.graph.order),
            "layers": [list(layer) for layer in self.graph.layers],
            "classification": self.classification.to_dict(),
            "assignments": {
                task_id: self.assignments[task_id].to_dict() for task_id in self.graph.order
            },
            "unassignable": self.unassignable,
            "capability_version": self.snapshot.version,
        }


class WorkflowCreator:
    """Builds, classifies, assigns and executes a task list.

    Planning is pure: it captures one capability snapshot, so a plan stays
    stable while workers come and go in the index.
    """

    def __init__(
        self,
        index: CapabilityIndex,
        backends: Mapping[str, WorkerBackend],
        config: WorkflowConfig | None = None,
        *,
        event_hook: ExecutorEventHook | None = None,
    ) -> None:
        self.index = index
        self.backends = dict(backends)
        self.config = config or WorkflowConfig.default()
        self.event_hook = event_hook
        self.matcher = WorkerMatcher(self.config.matching)

    def plan(self, tasks: Iterable[Task]) -> WorkflowPlan:
        task_list = list(tasks)
        for task in task_list:
            if task.aggregation is not None and task.aggregation not in AGGREGATION_STRATEGIES:
                raise ValueError(
                    f"Task '{task.id}' uses unsupported aggregation strategy: {task.aggregation}"
                )
        graph = build_task_graph(task_list)
        classification = classify(graph)
        snapshot = self.index.snapshot()
        assignments = self.matcher.match_all(
            (graph.task(task_id) for task_id in graph.order), snapshot
        )
        logger.info(
            "Planned %d task(s) as %s across %d phase(s) against capability v%d",
            len(graph),
            classification.pattern,
            len(classification.segments),
            snapshot.version,
        )
        return WorkflowPlan(
            graph=graph,
            classification=classification,
            assignments=assignments,
            snapshot=snapshot,
        )

    def coordinator(self) -> PhaseCoordinator:
        return PhaseCoordinator(
            self.backends,
            self.config.execution,
            aggregation=self.config.aggregation,
            event_hook=self.event_hook,
        )

    async def execute(
        self,
        plan: WorkflowPlan,
        inputs: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> WorkflowResult:
        return await self.coordinator().run(
            plan.graph,
            plan.classification,
            plan.assignments,
            inputs=inputs,
            run_id=run_id,
        )

    async def run(
        self,
        tasks: Iterable[Task],
        inputs: Mapping[str, Any] | None = None,
        *,
        run_id: str | None = None,
    ) -> WorkflowResult:
        return await self.execute(self.plan(tasks), inputs, run_id=run_id)


@dataclass(slots=True)
class WorkflowDefinition:
    tasks: list[Task]
    workers: list[Worker]
    inputs: dict[str, Any] = field(default_factory=dict)
    backends: dict[str, WorkerBackend] = field(default_factory=dict)
    source: Path | None = None

    def index(self) -> CapabilityIndex:
        return CapabilityIndex(self.workers)


def _read_payload(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise WorkflowFileError(f"Workflow file not found: {path}")
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() == ".json":
            payload = json.loads(text)
        else:
            payload = tomllib.loads(text)
    except (json.JSONDecodeError, tomllib.TOMLDecodeError) as exc:
        raise WorkflowFileError(f"Could not parse {path}: {exc}") from exc
    if not isinstance(payload, dict):
        raise WorkflowFileError(f"Workflow file {path} must contain a table/object.")
    return payload


def _command_backend(worker: Worker, base_dir: Path) -> CommandWorker | None:
    command = worker.metadata.get("command")
    if not command:
        return None
    if isinstance(command, str):
        parts = command.split()
    elif isinstance(command, list):
        parts = [str(part) for part in command]
    else:
        raise WorkflowFileError(f"Worker '{worker.name}' has an invalid command: {command!r}")
    env = worker.metadata.get("env")
    return CommandWorker(
        parts,
        name=worker.name,
        working_directory=base_dir,
        env=env if isinstance(env, dict) else None,
    )


def load_workflow_file(path: Path) -> WorkflowDefinition:
    """Load tasks, workers and inputs from a TOML or JSON workflow file.

    Workers declaring a ``command`` get a :class:`CommandWorker` backend that
    runs from the file's directory.
    """
    payload = _read_payload(path)
    raw_tasks = payload.get("tasks", [])
    raw_workers = payload.get("workers", [])
    raw_inputs = payload.get("inputs", {})
    if not isinstance(raw_tasks, list) or not isinstance(raw_workers, list):
        raise WorkflowFileError(f"'tasks' and 'workers' in {path} must be arrays of tables.")
    if not isinstance(raw_inputs, dict):
        raise WorkflowFileError(f"'inputs' in {path} must be a table.")

    try:
        tasks = [Task.from_dict(item) for item in raw_tasks]
        workers = [Worker.from_dict(item) for item in raw_workers]
    except (KeyError, TypeError, ValueError) as exc:
        raise WorkflowFileError(f"Invalid workflow entry in {path}: {exc}") from exc

    base_dir = path.resolve().parent
    backends: dict[str, WorkerBackend] = {}
    for worker in workers:
        backend = _command_backend(worker, base_dir)
        if backend is not None:
            backends[worker.name] = backend

    return WorkflowDefinition(
        tasks=tasks,
        workers=workers,
        inputs=dict(raw_inputs),
        backends=backends,
        source=path,
    )
