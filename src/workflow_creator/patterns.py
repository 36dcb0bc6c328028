from __future__ import annotations

import logging
from collections.abc import Iterable
from dataclasses import dataclass
from itertools import combinations
from typing import Any

from workflow_creator.graph import TaskGraph
from workflow_creator.models import PatternKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BranchGroup:
    """Alternative branch tasks hanging off the same decision point."""

    decision_point: tuple[str, ...]
    heads: tuple[str, ...]
    default: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "decision_point": list(self.decision_point),
            "heads": list(self.heads),
            "default": self.default,
        }


@dataclass(frozen=True, slots=True)
class Segment:
    index: int
    pattern: PatternKind
    task_ids: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "pattern": self.pattern, "task_ids": list(self.task_ids)}


@dataclass(frozen=True, slots=True)
class PatternClassification:
    pattern: PatternKind
    segments: tuple[Segment, ...]
    branch_groups: tuple[BranchGroup, ...]
    dependency_density: float
    branch_factor: int
    has_conditional: bool
    has_parallel: bool
    warnings: tuple[str, ...] = ()

    def segment_of(self, task_id: str) -> Segment:
        for segment in self.segments:
            if task_id in segment.task_ids:
                return segment
        raise KeyError(task_id)

    def group_for(self, task_id: str) -> BranchGroup | None:
        for group in self.branch_groups:
            if task_id in group.heads:
                return group
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "pattern": self.pattern,
            "dependency_density": round(self.dependency_density, 4),
            "branch_factor": self.branch_factor,
            "has_conditional": self.has_conditional,
            "has_parallel": self.has_parallel,
            "warnings": list(self.warnings),
            "segments": [segment.to_dict() for segment in self.segments],
            "branch_groups": [group.to_dict() for group in self.branch_groups],
        }


def find_branch_groups(graph: TaskGraph) -> tuple[tuple[BranchGroup, ...], list[str]]:
    warnings: list[str] = []
    grouped: dict[tuple[str, ...], list[str]] = {}
    for task_id in sorted(graph.order, key=graph.input_index.__getitem__):
        if not graph.task(task_id).is_branch:
            continue
        decision_point = tuple(graph.sorted_ids(graph.predecessors[task_id]))
        grouped.setdefault(decision_point, []).append(task_id)

    groups: list[BranchGroup] = []
    for decision_point, heads in grouped.items():
        defaults = [head for head in heads if graph.task(head).default_branch]
        if len(defaults) > 1:
            warnings.append(
                "Multiple default branches after "
                f"{list(decision_point) or 'run start'}: using '{defaults[0]}'."
            )
        groups.append(
            BranchGroup(
                decision_point=decision_point,
                heads=tuple(heads),
                default=defaults[0] if defaults else None,
            )
        )
    return tuple(groups), warnings


class _Exclusivity:
    """Answers whether two tasks sit on different arms of one branch group."""

    def __init__(self, graph: TaskGraph, groups: Iterable[BranchGroup]) -> None:
        self._arms: list[list[frozenset[str]]] = []
        for group in groups:
            if len(group.heads) < 2:
                continue
            self._arms.append(
                [frozenset({head, *graph.descendants[head]}) for head in group.heads]
            )

    def exclusive(self, left: str, right: str) -> bool:
        for arms in self._arms:
            for first, second in combinations(arms, 2):
                if left in first - second and right in second - first:
                    return True
                if right in first - second and left in second - first:
                    return True
        return False


def _has_parallel(graph: TaskGraph, task_ids: Iterable[str], exclusivity: _Exclusivity) -> bool:
    for left, right in combinations(list(task_ids), 2):
        if graph.independent(left, right) and not exclusivity.exclusive(left, right):
            return True
    return False


def _local_pattern(has_conditional: bool, has_parallel: bool) -> PatternKind:
    if has_conditional and has_parallel:
        return "hybrid"
    if has_conditional:
        return "conditional"
    if has_parallel:
        return "parallel"
    return "sequential"


def _dependency_density(graph: TaskGraph) -> float:
    possible = sum(
        len(upper) * len(lower) for upper, lower in zip(graph.layers, graph.layers[1:])
    )
    if possible == 0:
        return 0.0
    adjacent_edges = sum(
        1
        for task_id, preds in graph.predecessors.items()
        for pred in preds
        if graph.depths[task_id] == graph.depths[pred] + 1
    )
    return adjacent_edges / possible


def _segments(
    graph: TaskGraph, exclusivity: _Exclusivity
) -> list[tuple[PatternKind, list[str]]]:
    total = len(graph)
    cuts = [
        task_id
        for task_id in graph.order
        if len(graph.ancestors[task_id]) + len(graph.descendants[task_id]) + 1 == total
    ]
    cut_index = {task_id: index for index, task_id in enumerate(cuts)}

    slots: dict[int, list[str]] = {}
    for task_id in graph.order:
        if task_id in cut_index:
            slot = 2 * cut_index[task_id] + 1
        else:
            slot = 2 * sum(1 for cut in cuts if cut in graph.ancestors[task_id])
        slots.setdefault(slot, []).append(task_id)

    segments: list[tuple[PatternKind, list[str]]] = []
    extend_sequential = False
    for slot in sorted(slots):
        members = slots[slot]
        is_cut_slot = slot % 2 == 1
        if is_cut_slot and not graph.task(members[0]).is_branch:
            if extend_sequential:
                segments[-1][1].extend(members)
            else:
                segments.append(("sequential", list(members)))
                extend_sequential = True
            continue
        has_conditional = any(graph.task(task_id).is_branch for task_id in members)
        has_parallel = _has_parallel(graph, members, exclusivity)
        segments.append((_local_pattern(has_conditional, has_parallel), list(members)))
        extend_sequential = False
    return segments


def classify(graph: TaskGraph) -> PatternClassification:
    """Assign a coordination pattern to ``graph`` and split it into phases.

    Conditional components are detected first, a strictly linear chain is
    sequential, and independent non-exclusive tasks form a parallel
    component. Both components together make the graph hybrid.
    """
    groups, warnings = find_branch_groups(graph)
    exclusivity = _Exclusivity(graph, groups)
    total = len(graph)

    has_conditional = bool(groups)
    has_parallel = _has_parallel(graph, graph.order, exclusivity)
    if total == 0:
        warnings.append("Empty task graph; defaulting to sequential.")
        pattern: PatternKind = "sequential"
    elif not has_conditional and graph.longest_path_length == total:
        pattern = "sequential"
        if total == 1:
            warnings.append(
                f"Single task '{graph.order[0]}' has no coordination shape; "
                "defaulting to sequential."
            )
    else:
        pattern = _local_pattern(has_conditional, has_parallel)

    segments = tuple(
        Segment(index=index, pattern=kind, task_ids=tuple(members))
        for index, (kind, members) in enumerate(_segments(graph, exclusivity))
    )
    for warning in warnings:
        logger.warning(warning)

    return PatternClassification(
        pattern=pattern,
        segments=segments,
        branch_groups=groups,
        dependency_density=_dependency_density(graph),
        branch_factor=max((len(group.heads) for group in groups), default=0),
        has_conditional=has_conditional,
        has_parallel=has_parallel,
        warnings=tuple(warnings),
    )
