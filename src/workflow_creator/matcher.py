from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass

from workflow_creator.capabilities import CapabilitySnapshot
from workflow_creator.config import MatchingConfig
from workflow_creator.models import Assignment, Task, Worker

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ScoredWorker:
    worker: Worker
    coverage: float
    tier_bonus: float
    exact_tier: bool

    @property
    def confidence(self) -> float:
        return min(1.0, self.coverage * self.tier_bonus)


def coverage_ratio(required: Iterable[str], offered: Iterable[str]) -> float:
    required_set = set(required)
    if not required_set:
        return 1.0
    return len(required_set & set(offered)) / len(required_set)


class WorkerMatcher:
    """Ranks available workers for a task.

    Ranking is coverage descending, exact tier match first, then worker name,
    so repeated calls against the same snapshot return identical assignments.
    """

    def __init__(self, config: MatchingConfig | None = None) -> None:
        self.config = config or MatchingConfig()

    def tier_bonus(self, task_tier: str, worker_tier: str) -> float:
        if task_tier == worker_tier:
            return self.config.exact_tier_bonus
        order = list(self.config.tier_order)
        if task_tier not in order or worker_tier not in order:
            return self.config.distant_tier_bonus
        distance = abs(order.index(task_tier) - order.index(worker_tier))
        if distance == 1:
            return self.config.adjacent_tier_bonus
        return self.config.distant_tier_bonus

    def score(self, task: Task, worker: Worker) -> ScoredWorker:
        return ScoredWorker(
            worker=worker,
            coverage=coverage_ratio(task.requires, worker.capabilities),
            tier_bonus=self.tier_bonus(task.tier, worker.tier),
            exact_tier=task.tier == worker.tier,
        )

    def rank(self, task: Task, snapshot: CapabilitySnapshot) -> list[ScoredWorker]:
        threshold = self.config.acceptance_threshold
        survivors = [
            scored
            for scored in (self.score(task, worker) for worker in snapshot.available())
            if scored.coverage >= threshold
        ]
        survivors.sort(key=lambda item: (-item.coverage, not item.exact_tier, item.worker.name))
        return survivors

    def match(self, task: Task, snapshot: CapabilitySnapshot) -> Assignment:
        ranked = self.rank(task, snapshot)
        if not ranked:
            reason = (
                "No available worker covers at least "
                f"{self.config.acceptance_threshold:.0%} of {sorted(task.requires)}."
            )
            logger.info("Task %s is unassignable: %s", task.id, reason)
            return Assignment(
                task_id=task.id,
                primary=None,
                status="unassignable",
                reason=reason,
            )

        primary = ranked[0]
        max_fallbacks = max(0, int(self.config.max_fallbacks))
        fallbacks = tuple(item.worker.name for item in ranked[1 : 1 + max_fallbacks])
        return Assignment(
            task_id=task.id,
            primary=primary.worker.name,
            fallbacks=fallbacks,
            confidence=primary.confidence,
            coverage=primary.coverage,
            status="assigned",
        )

    def match_all(
        self, tasks: Iterable[Task], snapshot: CapabilitySnapshot
    ) -> dict[str, Assignment]:
        return {task.id: self.match(task, snapshot) for task in tasks}
