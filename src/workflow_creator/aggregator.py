from __future__ import annotations

import copy
import json
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from workflow_creator.config import AGGREGATION_STRATEGIES
from workflow_creator.context import ContextFragment


class AggregationConflictError(RuntimeError):
    """Raised when consensus cannot pick a single value."""

    def __init__(self, message: str, *, tied: list[list[str]] | None = None) -> None:
        super().__init__(message)
        self.tied = tied or []


@dataclass(frozen=True, slots=True)
class AggregationResult:
    strategy: str
    data: dict[str, Any]
    contributors: tuple[str, ...]
    selected: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "strategy": self.strategy,
            "data": self.data,
            "contributors": list(self.contributors),
            "selected": list(self.selected),
        }


def _canonical(data: Mapping[str, Any]) -> str:
    return json.dumps(dict(data), sort_keys=True, ensure_ascii=False, default=str)


def _merge(fragments: Sequence[ContextFragment]) -> tuple[dict[str, Any], tuple[str, ...]]:
    merged = {fragment.task_id: copy.deepcopy(dict(fragment.data)) for fragment in fragments}
    return merged, tuple(merged)


def _consensus(
    fragments: Sequence[ContextFragment], confidences: Mapping[str, float]
) -> tuple[dict[str, Any], tuple[str, ...]]:
    supporters: dict[str, list[ContextFragment]] = {}
    for fragment in fragments:
        supporters.setdefault(_canonical(fragment.data), []).append(fragment)

    top = max(len(group) for group in supporters.values())
    leaders = [group for group in supporters.values() if len(group) == top]
    if len(leaders) > 1:
        best = {
            id(group): max(confidences.get(item.task_id, 0.0) for item in group)
            for group in leaders
        }
        highest = max(best.values())
        winners = [group for group in leaders if best[id(group)] == highest]
        if len(winners) > 1:
            tied = [[item.task_id for item in group] for group in winners]
            raise AggregationConflictError(
                f"Consensus tie between {tied} with equal confidence {highest:.2f}.",
                tied=tied,
            )
        leaders = winners

    winner = leaders[0]
    return copy.deepcopy(dict(winner[0].data)), tuple(item.task_id for item in winner)


def _priority(
    fragments: Sequence[ContextFragment], confidences: Mapping[str, float]
) -> tuple[dict[str, Any], tuple[str, ...]]:
    chosen = fragments[0]
    for fragment in fragments[1:]:
        if confidences.get(fragment.task_id, 0.0) > confidences.get(chosen.task_id, 0.0):
            chosen = fragment
    return copy.deepcopy(dict(chosen.data)), (chosen.task_id,)


def aggregate(
    fragments: Sequence[ContextFragment],
    strategy: str = "merge",
    confidences: Mapping[str, float] | None = None,
) -> AggregationResult:
    """Combine converging fragments into one.

    ``fragments`` are expected in topological order; ``priority`` keeps the
    earliest fragment when confidences tie.
    """
    if strategy not in AGGREGATION_STRATEGIES:
        raise ValueError(f"Unsupported aggregation strategy: {strategy}")
    contributors = tuple(fragment.task_id for fragment in fragments)
    if not fragments:
        return AggregationResult(strategy=strategy, data={}, contributors=(), selected=())

    scores = confidences or {}
    if strategy == "merge":
        data, selected = _merge(fragments)
    elif strategy == "consensus":
        data, selected = _consensus(fragments, scores)
    else:
        data, selected = _priority(fragments, scores)
    return AggregationResult(
        strategy=strategy,
        data=data,
        contributors=contributors,
        selected=selected,
    )
