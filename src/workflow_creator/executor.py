from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable, Mapping
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from workflow_creator.aggregator import AggregationConflictError, AggregationResult, aggregate
from workflow_creator.config import AggregationConfig, ExecutionConfig
from workflow_creator.context import ExecutionContext
from workflow_creator.graph import TaskGraph
from workflow_creator.models import (
    AbortRun,
    Assignment,
    AttemptRecord,
    ExecutionResult,
    PhaseRecord,
    TaskStatus,
    WorkflowResult,
    utcnow_iso,
)
from workflow_creator.patterns import BranchGroup, PatternClassification, Segment
from workflow_creator.workers.base import TaskExecutionError, WorkerBackend
from workflow_creator.workers.resilient import (
    RetryPolicy,
    TransientClassifier,
    call_worker,
    is_transient_error,
)

logger = logging.getLogger(__name__)

ExecutorEventHook = Callable[[dict[str, Any]], None]

_READY_UPSTREAM = frozenset({"succeeded", "skipped"})


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


class PhaseCoordinator:
    """Drives a classified task graph through its phases.

    The coordinator is the only writer of task state and of the execution
    context. Worker calls, phase barriers and retry backoff are the only
    points where a run suspends.
    """

    def __init__(
        self,
        backends: Mapping[str, WorkerBackend],
        config: ExecutionConfig | None = None,
        *,
        aggregation: AggregationConfig | None = None,
        transient_classifier: TransientClassifier = is_transient_error,
        event_hook: ExecutorEventHook | None = None,
    ) -> None:
        self.backends = dict(backends)
        self.config = config or ExecutionConfig()
        self.aggregation = aggregation or AggregationConfig()
        self.transient_classifier = transient_classifier
        self.event_hook = event_hook
        self.retry_policy = RetryPolicy.from_config(self.config)

    async def run(
        self,
        graph: TaskGraph,
        classification: PatternClassification,
        assignments: Mapping[str, Assignment],
        *,
        inputs: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> WorkflowResult:
        workflow_run = _WorkflowRun(
            self,
            graph=graph,
            classification=classification,
            assignments=assignments,
            inputs=inputs or {},
            run_id=run_id or new_run_id(),
        )
        return await workflow_run.execute()


class _WorkflowRun:
    def __init__(
        self,
        coordinator: PhaseCoordinator,
        *,
        graph: TaskGraph,
        classification: PatternClassification,
        assignments: Mapping[str, Assignment],
        inputs: Mapping[str, Any],
        run_id: str,
    ) -> None:
        self.coordinator = coordinator
        self.config = coordinator.config
        self.policy = coordinator.retry_policy
        self.graph = graph
        self.classification = classification
        self.assignments = dict(assignments)
        self.run_id = run_id
        self.context = ExecutionContext(inputs)
        self.results: dict[str, ExecutionResult] = {
            task_id: ExecutionResult(
                task_id=task_id, output_schema=graph.task(task_id).output_schema
            )
            for task_id in graph.order
        }
        self.phases = [
            PhaseRecord(index=segment.index, pattern=segment.pattern, task_ids=segment.task_ids)
            for segment in classification.segments
        ]
        self.running: dict[asyncio.Task[None], str] = {}
        self.decided: set[int] = set()
        self.branch_decisions: list[dict[str, Any]] = []
        self.joins: dict[str, dict[str, Any]] = {}
        self.warnings = list(classification.warnings)
        self.degraded = False
        self.aborted = False
        self.abort_cause: str | None = None
        self.abort_reason: str | None = None

    def _emit(self, event: dict[str, Any]) -> None:
        payload = {"run_id": self.run_id, **event}
        logger.debug("%s", payload)
        if self.coordinator.event_hook:
            self.coordinator.event_hook(payload)

    def _load_bearing(self, task_id: str) -> bool:
        return not (self.graph.task(task_id).optional or self.config.graceful_degradation)

    def _transition(self, task_id: str, status: TaskStatus, *, reason: str | None = None) -> None:
        result = self.results[task_id]
        result.status = status
        result.transitions.append(status)
        if reason:
            result.reason = reason
        if status in {"running", "fallback_running"} and result.started_at is None:
            result.started_at = utcnow_iso()
        if result.terminal and status != "failed":
            result.completed_at = utcnow_iso()
        self._emit({"event": "task_status", "task_id": task_id, "status": status, "reason": reason})

    def _skip(self, task_id: str, reason: str) -> None:
        self._transition(task_id, "skipped", reason=reason)

    async def execute(self) -> WorkflowResult:
        started_at = utcnow_iso()
        started = time.monotonic()
        self._emit(
            {
                "event": "run_start",
                "pattern": self.classification.pattern,
                "phases": len(self.phases),
                "tasks": len(self.graph),
            }
        )
        logger.info(
            "Run %s started: %d task(s), pattern %s",
            self.run_id,
            len(self.graph),
            self.classification.pattern,
        )

        try:
            self._check_unassignable()
            for phase, segment in zip(self.phases, self.classification.segments):
                phase.status = "running"
                phase.started_at = utcnow_iso()
                self._emit(
                    {"event": "phase_start", "phase": phase.index, "pattern": phase.pattern}
                )
                await self._run_phase(segment)
                phase.status = "completed"
                phase.completed_at = utcnow_iso()
                self._emit({"event": "phase_complete", "phase": phase.index})
        except AbortRun as exc:
            await self._abort(exc)

        if self.aborted:
            status = "aborted"
        elif self.degraded:
            status = "degraded"
        else:
            status = "succeeded"
        self._emit({"event": "run_complete", "status": status})
        logger.info("Run %s finished with status %s", self.run_id, status)

        return WorkflowResult(
            run_id=self.run_id,
            pattern=self.classification.pattern,
            status=status,
            started_at=started_at,
            ended_at=utcnow_iso(),
            duration_seconds=time.monotonic() - started,
            tasks=[self.graph.task(task_id) for task_id in self.graph.order],
            phases=self.phases,
            assignments=self.assignments,
            results=self.results,
            context=self.context.to_dict(),
            inputs=dict(self.context.inputs),
            branch_decisions=self.branch_decisions,
            joins=self.joins,
            abort_cause=self.abort_cause,
            abort_reason=self.abort_reason,
            warnings=self.warnings,
        )

    def _bypassable(self, task_id: str) -> bool:
        if self.graph.task(task_id).is_branch:
            return True
        return any(
            self.graph.task(upstream).is_branch for upstream in self.graph.ancestors[task_id]
        )

    def _check_unassignable(self) -> None:
        for task_id in self.graph.order:
            assignment = self.assignments.get(task_id)
            if assignment is not None and assignment.is_assignable:
                continue
            if self._bypassable(task_id) or not self._load_bearing(task_id):
                continue
            reason = assignment.reason if assignment else "No assignment was computed."
            self._transition(task_id, "unassignable", reason=reason)
            raise AbortRun(
                f"Task '{task_id}' is unassignable and cannot be bypassed: {reason}",
                task_id=task_id,
            )

    def _upstream_ready(self, task_id: str) -> bool:
        return all(
            self.results[pred].status in _READY_UPSTREAM
            for pred in self.graph.predecessors[task_id]
        )

    def _group_decided(self, task_id: str) -> bool:
        for index, group in enumerate(self.classification.branch_groups):
            if task_id in group.heads:
                return index in self.decided
        return True

    def _settle(self, members: list[str]) -> None:
        member_set = set(members)
        changed = True
        while changed:
            changed = False
            for index, group in enumerate(self.classification.branch_groups):
                if index in self.decided or not member_set.intersection(group.heads):
                    continue
                if all(self.results[pred].terminal for pred in group.decision_point):
                    self._decide(index, group)
                    changed = True
            for task_id in members:
                preds = self.graph.predecessors[task_id]
                if self.results[task_id].status != "pending" or not preds:
                    continue
                if all(self.results[pred].status == "skipped" for pred in preds):
                    self._skip(task_id, "All upstream tasks were skipped.")
                    changed = True

    def _decide(self, index: int, group: BranchGroup) -> None:
        self.decided.add(index)
        decision: dict[str, Any] = {
            "decision_point": list(group.decision_point),
            "heads": list(group.heads),
            "evaluated": [],
            "selected": None,
        }
        preds = group.decision_point
        if preds and all(self.results[pred].status == "skipped" for pred in preds):
            for head in group.heads:
                if not self.results[head].terminal:
                    self._skip(head, "Decision point was skipped.")
            self._skip_losing_arms(group, None)
            decision["reason"] = "decision point skipped"
            self.branch_decisions.append(decision)
            return
        if all(self.results[head].terminal for head in group.heads):
            # Every head sits on an arm that an earlier decision discarded.
            decision["reason"] = "discarded by an earlier branch"
            self.branch_decisions.append(decision)
            return

        first_head = group.heads[0]
        view = self.context.view(
            first_head, self.graph.sorted_ids(self.graph.ancestors[first_head])
        )
        selected: str | None = None
        for head in group.heads:
            condition = self.graph.task(head).condition
            if condition is None:
                continue
            try:
                outcome = bool(condition(view))
            except Exception as exc:
                self._transition(head, "failed", reason=f"Branch condition raised: {exc!r}")
                self.branch_decisions.append(decision)
                raise AbortRun(
                    f"Branch condition for '{head}' could not be evaluated: {exc!r}",
                    task_id=head,
                ) from exc
            describe = getattr(condition, "describe", None)
            decision["evaluated"].append(
                {
                    "task_id": head,
                    "condition": describe() if callable(describe) else repr(condition),
                    "result": outcome,
                }
            )
            if outcome:
                selected = head
                break

        if selected is None and group.default is not None:
            selected = group.default
            decision["reason"] = "default branch"
        elif selected is None:
            decision["reason"] = "no branch condition held"
        else:
            decision["reason"] = "condition held"
        decision["selected"] = selected

        for head in group.heads:
            if head != selected and not self.results[head].terminal:
                self._skip(head, f"Branch not taken; selected {selected or 'none'}.")
        self._skip_losing_arms(group, selected)
        self.branch_decisions.append(decision)
        self._emit({"event": "branch_decided", "selected": selected, "heads": list(group.heads)})

    def _skip_losing_arms(self, group: BranchGroup, selected: str | None) -> None:
        """Skip everything downstream of a losing head unless the selected head reaches it too."""
        kept: set[str] = set()
        if selected is not None:
            kept = {selected, *self.graph.descendants[selected]}
        for head in group.heads:
            if head == selected:
                continue
            for task_id in self.graph.sorted_ids(self.graph.descendants[head]):
                if task_id in kept or self.results[task_id].terminal:
                    continue
                self._skip(task_id, f"On untaken branch '{head}'.")

    async def _run_phase(self, segment: Segment) -> None:
        members = list(segment.task_ids)
        if segment.pattern == "sequential":
            limit = 1
        else:
            limit = max(1, int(self.config.max_concurrency))

        while True:
            self._settle(members)
            ready = [
                task_id
                for task_id in members
                if self.results[task_id].status == "pending"
                and self._upstream_ready(task_id)
                and self._group_decided(task_id)
            ]
            for task_id in ready[: max(0, limit - len(self.running))]:
                self._start(task_id)

            if not self.running:
                stuck = [task_id for task_id in members if not self.results[task_id].terminal]
                if stuck:
                    raise AbortRun(f"Tasks could not be scheduled: {stuck}", task_id=stuck[0])
                return

            done, _pending = await asyncio.wait(
                list(self.running), return_when=asyncio.FIRST_COMPLETED
            )
            abort: AbortRun | None = None
            for handle in done:
                task_id = self.running.pop(handle)
                exc = handle.exception()
                if exc is None:
                    continue
                if isinstance(exc, AbortRun):
                    abort = abort or exc
                    continue
                logger.exception("Unexpected error while executing %s", task_id, exc_info=exc)
                if not self.results[task_id].terminal:
                    self._transition(task_id, "failed", reason=f"Unexpected error: {exc!r}")
                abort = abort or AbortRun(
                    f"Unexpected error in task '{task_id}': {exc!r}", task_id=task_id
                )
            if abort is not None:
                raise abort

    def _start(self, task_id: str) -> None:
        assignment = self.assignments.get(task_id)
        if assignment is None or not assignment.is_assignable:
            reason = assignment.reason if assignment else "No assignment was computed."
            if self._load_bearing(task_id):
                self._transition(task_id, "unassignable", reason=reason)
                raise AbortRun(f"Task '{task_id}' is unassignable: {reason}", task_id=task_id)
            self.degraded = True
            self._skip(task_id, f"Unassignable: {reason}")
            return

        self._transition(task_id, "running")
        handle = asyncio.create_task(self._execute_task(task_id, assignment), name=task_id)
        self.running[handle] = task_id

    def _aggregate_for(self, task_id: str) -> AggregationResult | None:
        preds = self.graph.predecessors[task_id]
        if len(preds) < 2:
            return None
        fragments = [
            self.context.fragment(pred)
            for pred in self.graph.sorted_ids(preds)
            if pred in self.context
        ]
        strategy = (
            self.graph.task(task_id).aggregation
            or self.coordinator.aggregation.default_strategy
        )
        confidences = {
            pred: self.assignments[pred].confidence for pred in preds if pred in self.assignments
        }
        merged = aggregate(fragments, strategy, confidences)
        self.joins[task_id] = merged.to_dict()
        self._emit(
            {
                "event": "join_aggregated",
                "task_id": task_id,
                "strategy": strategy,
                "contributors": list(merged.contributors),
            }
        )
        return merged

    def _exhausted(self, task_id: str, reason: str, started: float) -> None:
        result = self.results[task_id]
        result.duration_seconds = time.monotonic() - started
        if result.status != "failed":
            self._transition(task_id, "failed", reason=reason)
        else:
            result.reason = reason
        if self._load_bearing(task_id):
            result.completed_at = utcnow_iso()
            raise AbortRun(f"Task '{task_id}' failed: {reason}", task_id=task_id)
        self.degraded = True
        logger.warning("Task %s skipped after failure: %s", task_id, reason)
        self._skip(task_id, f"Graceful degradation after failure: {reason}")

    async def _execute_task(self, task_id: str, assignment: Assignment) -> None:
        task = self.graph.task(task_id)
        result = self.results[task_id]
        started = time.monotonic()

        try:
            merged = self._aggregate_for(task_id)
        except AggregationConflictError as exc:
            result.error = str(exc)
            self._exhausted(task_id, f"Aggregation conflict: {exc}", started)
            return

        view = self.context.view(
            task_id, self.graph.sorted_ids(self.graph.ancestors[task_id]), merged=merged
        )
        errors: list[str] = []
        for position, worker_name in enumerate(assignment.candidates):
            role = "primary" if position == 0 else "fallback"
            active_status: TaskStatus = "running" if position == 0 else "fallback_running"
            if position > 0:
                self._transition(task_id, active_status)
                self._emit({"event": "task_fallback", "task_id": task_id, "worker": worker_name})
            backend = self.coordinator.backends.get(worker_name)

            for attempt in range(self.policy.max_retries + 1):
                if attempt > 0:
                    delay = self.policy.delay_for(attempt)
                    result.retries += 1
                    self._transition(task_id, "retrying")
                    self._emit(
                        {
                            "event": "task_retry",
                            "task_id": task_id,
                            "worker": worker_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                    self._transition(task_id, active_status)

                record = AttemptRecord(
                    worker=worker_name,
                    role=role,
                    attempt=attempt + 1,
                    started_at=utcnow_iso(),
                )
                result.attempts.append(record)
                attempt_started = time.monotonic()
                try:
                    if backend is None:
                        raise TaskExecutionError(
                            f"No backend registered for worker '{worker_name}'.",
                            worker=worker_name,
                            transient=False,
                        )
                    output = await call_worker(
                        backend,
                        task,
                        view,
                        worker_name=worker_name,
                        timeout_seconds=self.policy.timeout_seconds,
                    )
                except asyncio.CancelledError:
                    record.duration_seconds = time.monotonic() - attempt_started
                    record.error = "cancelled"
                    raise
                except Exception as exc:
                    record.duration_seconds = time.monotonic() - attempt_started
                    if self.aborted:
                        record.error = f"discarded after abort: {exc}"
                        return
                    transient = bool(self.coordinator.transient_classifier(exc))
                    record.error = str(exc)
                    record.transient = transient
                    errors.append(f"{worker_name}[{attempt + 1}]: {exc}")
                    result.error = str(exc)
                    self._transition(task_id, "failed", reason=str(exc))
                    self._emit(
                        {
                            "event": "task_attempt_failed",
                            "task_id": task_id,
                            "worker": worker_name,
                            "attempt": attempt + 1,
                            "error": str(exc),
                            "transient": transient,
                        }
                    )
                    logger.warning(
                        "Task %s attempt %d on %s failed (%s): %s",
                        task_id,
                        attempt + 1,
                        worker_name,
                        "transient" if transient else "permanent",
                        exc,
                    )
                    if not transient:
                        break
                    continue

                record.duration_seconds = time.monotonic() - attempt_started
                if self.aborted:
                    # The worker ignored cancellation; the run has already been finalized.
                    record.error = "discarded after abort"
                    logger.warning("Discarding late output of %s after abort", task_id)
                    return
                record.ok = True
                fragment = self.context.record(task_id, output, schema=task.output_schema)
                result.output = dict(fragment.data)
                result.worker = worker_name
                result.executed_by = role
                result.error = None
                result.duration_seconds = time.monotonic() - started
                result.reason = (
                    "" if role == "primary" else f"Recovered on fallback worker {worker_name}."
                )
                self._transition(task_id, "succeeded")
                return

        summary = "; ".join(errors[-6:])
        self._exhausted(task_id, f"All workers failed. {summary}", started)

    async def _abort(self, exc: AbortRun) -> None:
        self.aborted = True
        self.abort_cause = exc.task_id
        self.abort_reason = str(exc)
        logger.error("Run %s aborted: %s", self.run_id, exc)

        handles = list(self.running)
        for handle in handles:
            handle.cancel()
        if handles:
            done, pending = await asyncio.wait(handles, timeout=self.config.cancel_grace_seconds)
            for handle in done:
                if not handle.cancelled():
                    handle.exception()
            if pending:
                lingering = sorted(self.running[handle] for handle in pending)
                logger.warning(
                    "%d worker call(s) did not acknowledge cancellation within %.1fs",
                    len(pending),
                    self.config.cancel_grace_seconds,
                )
                self._emit(
                    {
                        "event": "cancel_grace_expired",
                        "task_ids": lingering,
                        "grace_seconds": self.config.cancel_grace_seconds,
                    }
                )
        self.running.clear()

        for task_id in self.graph.order:
            if not self.results[task_id].terminal:
                self._transition(task_id, "aborted", reason=f"Run aborted: {exc}")
        for phase in self.phases:
            if phase.status != "completed":
                phase.status = "aborted"
        self._emit({"event": "run_aborted", "task_id": exc.task_id, "reason": str(exc)})
