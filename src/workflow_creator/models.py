from __future__ import annotations

import json
import operator
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal

TaskStatus = Literal[
    "pending",
    "running",
    "retrying",
    "fallback_running",
    "succeeded",
    "failed",
    "skipped",
    "aborted",
    "unassignable",
]
PatternKind = Literal["sequential", "parallel", "conditional", "hybrid"]
RunStatus = Literal["succeeded", "degraded", "aborted"]
ExecutedBy = Literal["primary", "fallback", "none"]
AssignmentStatus = Literal["assigned", "unassignable"]

TERMINAL_STATUSES = frozenset({"succeeded", "failed", "skipped", "aborted", "unassignable"})

_COMPARATORS: dict[str, Callable[[Any, Any], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}
CONDITION_OPERATORS = frozenset({*_COMPARATORS, "in", "not_in", "exists", "truthy"})


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


@dataclass(frozen=True, slots=True)
class Condition:
    """Declarative branch predicate evaluated against a context view.

    A missing key makes every operator except ``exists`` evaluate to false.
    """

    key: str
    op: str = "truthy"
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in CONDITION_OPERATORS:
            raise ValueError(f"Unsupported condition operator: {self.op}")

    def __call__(self, context: Any) -> bool:
        if self.op == "exists":
            return self.key in context
        if self.key not in context:
            return False
        actual = context[self.key]
        if self.op == "truthy":
            return bool(actual)
        if self.op == "in":
            return actual in self.value
        if self.op == "not_in":
            return actual not in self.value
        return bool(_COMPARATORS[self.op](actual, self.value))

    def describe(self) -> str:
        if self.op in {"exists", "truthy"}:
            return f"{self.op}({self.key})"
        return f"{self.key} {self.op} {self.value!r}"

    def to_dict(self) -> dict[str, Any]:
        return {"key": self.key, "op": self.op, "value": self.value}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Condition:
        return cls(
            key=str(payload["key"]),
            op=str(payload.get("op", "truthy")),
            value=payload.get("value"),
        )


def _describe_condition(condition: Callable[[Any], bool] | None) -> Any:
    if condition is None:
        return None
    if isinstance(condition, Condition):
        return condition.to_dict()
    return {"callable": getattr(condition, "__name__", type(condition).__name__)}


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    description: str = ""
    requires: frozenset[str] = frozenset()
    after: tuple[str, ...] = ()
    condition: Callable[[Any], bool] | None = field(default=None, compare=False)
    default_branch: bool = False
    output_schema: str | None = None
    tier: str = "standard"
    optional: bool = False
    aggregation: str | None = None

    def __post_init__(self) -> None:
        if not self.id:
            raise ValueError("Task id must be a non-empty string.")
        object.__setattr__(self, "requires", frozenset(str(item) for item in self.requires))
        object.__setattr__(self, "after", tuple(str(item) for item in self.after))

    @property
    def is_branch(self) -> bool:
        return self.condition is not None or self.default_branch

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "description": self.description,
            "requires": sorted(self.requires),
            "after": list(self.after),
            "condition": _describe_condition(self.condition),
            "default_branch": self.default_branch,
            "output_schema": self.output_schema,
            "tier": self.tier,
            "optional": self.optional,
            "aggregation": self.aggregation,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Task:
        when = payload.get("when") or payload.get("condition")
        condition = Condition.from_dict(when) if isinstance(when, Mapping) else None
        return cls(
            id=str(payload["id"]),
            description=str(payload.get("description", "")),
            requires=frozenset(payload.get("requires", [])),
            after=tuple(payload.get("after", [])),
            condition=condition,
            default_branch=bool(payload.get("default_branch", False)),
            output_schema=payload.get("output_schema"),
            tier=str(payload.get("tier", "standard")),
            optional=bool(payload.get("optional", False)),
            aggregation=payload.get("aggregation"),
        )


@dataclass(frozen=True, slots=True)
class Worker:
    name: str
    capabilities: frozenset[str] = frozenset()
    tier: str = "standard"
    available: bool = True
    metadata: dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Worker name must be a non-empty string.")
        object.__setattr__(
            self, "capabilities", frozenset(str(item) for item in self.capabilities)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "capabilities": sorted(self.capabilities),
            "tier": self.tier,
            "available": self.available,
            "metadata": dict(self.metadata),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> Worker:
        metadata = {
            key: value
            for key, value in payload.items()
            if key not in {"name", "capabilities", "tier", "available"}
        }
        return cls(
            name=str(payload["name"]),
            capabilities=frozenset(payload.get("capabilities", [])),
            tier=str(payload.get("tier", "standard")),
            available=bool(payload.get("available", True)),
            metadata=metadata,
        )


@dataclass(frozen=True, slots=True)
class Assignment:
    task_id: str
    primary: str | None
    fallbacks: tuple[str, ...] = ()
    confidence: float = 0.0
    coverage: float = 0.0
    status: AssignmentStatus = "assigned"
    reason: str = ""

    @property
    def is_assignable(self) -> bool:
        return self.status == "assigned" and self.primary is not None

    @property
    def candidates(self) -> tuple[str, ...]:
        if self.primary is None:
            return ()
        return (self.primary, *self.fallbacks)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "primary": self.primary,
            "fallbacks": list(self.fallbacks),
            "confidence": round(self.confidence, 4),
            "coverage": round(self.coverage, 4),
            "status": self.status,
            "reason": self.reason,
        }


@dataclass(slots=True)
class AttemptRecord:
    worker: str
    role: ExecutedBy
    attempt: int
    started_at: str
    duration_seconds: float = 0.0
    ok: bool = False
    error: str | None = None
    transient: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker": self.worker,
            "role": self.role,
            "attempt": self.attempt,
            "started_at": self.started_at,
            "duration_seconds": round(self.duration_seconds, 4),
            "ok": self.ok,
            "error": self.error,
            "transient": self.transient,
        }


@dataclass(slots=True)
class ExecutionResult:
    task_id: str
    status: TaskStatus = "pending"
    reason: str = ""
    worker: str | None = None
    executed_by: ExecutedBy = "none"
    output: dict[str, Any] | None = None
    output_schema: str | None = None
    error: str | None = None
    retries: int = 0
    started_at: str | None = None
    completed_at: str | None = None
    duration_seconds: float = 0.0
    attempts: list[AttemptRecord] = field(default_factory=list)
    transitions: list[str] = field(default_factory=lambda: ["pending"])

    @property
    def terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status,
            "reason": self.reason,
            "worker": self.worker,
            "executed_by": self.executed_by,
            "output": self.output,
            "output_schema": self.output_schema,
            "error": self.error,
            "retries": self.retries,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_seconds": round(self.duration_seconds, 4),
            "attempts": [attempt.to_dict() for attempt in self.attempts],
            "transitions": list(self.transitions),
        }


@dataclass(slots=True)
class PhaseRecord:
    index: int
    pattern: PatternKind
    task_ids: tuple[str, ...]
    status: str = "pending"
    started_at: str | None = None
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "index": self.index,
            "pattern": self.pattern,
            "task_ids": list(self.task_ids),
            "status": self.status,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class AbortRun(RuntimeError):
    """Raised when a load-bearing task exhausts every recovery option."""

    def __init__(self, message: str, *, task_id: str | None = None, result: Any = None) -> None:
        super().__init__(message)
        self.task_id = task_id
        self.result = result


@dataclass(slots=True)
class WorkflowResult:
    run_id: str
    pattern: PatternKind
    status: RunStatus
    started_at: str
    ended_at: str
    duration_seconds: float
    tasks: list[Task]
    phases: list[PhaseRecord]
    assignments: dict[str, Assignment]
    results: dict[str, ExecutionResult]
    context: dict[str, Any] = field(default_factory=dict)
    inputs: dict[str, Any] = field(default_factory=dict)
    branch_decisions: list[dict[str, Any]] = field(default_factory=list)
    joins: dict[str, dict[str, Any]] = field(default_factory=dict)
    abort_cause: str | None = None
    abort_reason: str | None = None
    warnings: list[str] = field(default_factory=list)

    def result_for(self, task_id: str) -> ExecutionResult:
        return self.results[task_id]

    def statuses(self) -> dict[str, str]:
        return {task.id: self.results[task.id].status for task in self.tasks}

    def tasks_with_status(self, *statuses: str) -> list[str]:
        wanted = set(statuses)
        return [task.id for task in self.tasks if self.results[task.id].status in wanted]

    def raise_for_status(self) -> None:
        if self.status == "aborted":
            raise AbortRun(
                f"Run {self.run_id} aborted by task {self.abort_cause}: {self.abort_reason}",
                task_id=self.abort_cause,
                result=self,
            )

    def to_dict(self) -> dict[str, Any]:
        task_entries: list[dict[str, Any]] = []
        for task in self.tasks:
            assignment = self.assignments.get(task.id)
            task_entries.append(
                {
                    "task": task.to_dict(),
                    "assignment": assignment.to_dict() if assignment else None,
                    "result": self.results[task.id].to_dict(),
                }
            )
        return {
            "run_id": self.run_id,
            "pattern": self.pattern,
            "status": self.status,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration_seconds": round(self.duration_seconds, 4),
            "abort_cause": self.abort_cause,
            "abort_reason": self.abort_reason,
            "warnings": list(self.warnings),
            "phases": [phase.to_dict() for phase in self.phases],
            "tasks": task_entries,
            "branch_decisions": list(self.branch_decisions),
            "joins": dict(self.joins),
            "inputs": dict(self.inputs),
            "context": dict(self.context),
        }

    def to_json(self, *, indent: int | None = 2) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, indent=indent, default=str)


def tasks_from_dicts(payloads: Iterable[Mapping[str, Any]]) -> list[Task]:
    return [Task.from_dict(payload) for payload in payloads]
