from __future__ import annotations

import heapq
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from types import MappingProxyType

from workflow_creator.models import Task


class TaskGraphError(RuntimeError):
    """Raised when a task list cannot be turned into a valid DAG."""


class DuplicateTaskError(TaskGraphError):
    def __init__(self, task_id: str) -> None:
        super().__init__(f"Duplicate task id: {task_id}")
        self.task_id = task_id


class DanglingReferenceError(TaskGraphError):
    def __init__(self, task_id: str, missing: str) -> None:
        super().__init__(f"Task '{task_id}' depends on unknown task '{missing}'.")
        self.task_id = task_id
        self.missing = missing


class CyclicDependencyError(TaskGraphError):
    def __init__(self, cycle: list[str]) -> None:
        super().__init__("Cyclic dependency detected: " + " -> ".join(cycle))
        self.cycle = cycle


@dataclass(frozen=True, slots=True)
class TaskGraph:
    """Immutable DAG over a validated task list.

    ``order`` is a topological order sorted by (depth, input index), where
    depth is the longest path from any root.
    """

    tasks: Mapping[str, Task]
    order: tuple[str, ...]
    predecessors: Mapping[str, tuple[str, ...]]
    successors: Mapping[str, tuple[str, ...]]
    depths: Mapping[str, int]
    layers: tuple[tuple[str, ...], ...]
    ancestors: Mapping[str, frozenset[str]]
    descendants: Mapping[str, frozenset[str]]
    input_index: Mapping[str, int]

    def __len__(self) -> int:
        return len(self.order)

    def __contains__(self, task_id: object) -> bool:
        return task_id in self.tasks

    def task(self, task_id: str) -> Task:
        return self.tasks[task_id]

    @property
    def edge_count(self) -> int:
        return sum(len(preds) for preds in self.predecessors.values())

    @property
    def longest_path_length(self) -> int:
        """Number of tasks on the longest dependency chain."""
        return len(self.layers)

    @property
    def roots(self) -> tuple[str, ...]:
        return tuple(task_id for task_id in self.order if not self.predecessors[task_id])

    def independent(self, left: str, right: str) -> bool:
        if left == right:
            return False
        return left not in self.ancestors[right] and right not in self.ancestors[left]

    def sorted_ids(self, task_ids: Iterable[str]) -> list[str]:
        position = {task_id: index for index, task_id in enumerate(self.order)}
        return sorted(task_ids, key=position.__getitem__)


def _find_cycle(remaining: set[str], predecessors: dict[str, list[str]]) -> list[str]:
    # Every remaining node still has a remaining predecessor, so walking
    # predecessors from any of them must revisit a node.
    start = min(remaining)
    path: list[str] = []
    seen: dict[str, int] = {}
    current = start
    while current not in seen:
        seen[current] = len(path)
        path.append(current)
        current = next(pred for pred in predecessors[current] if pred in remaining)
    cycle = path[seen[current] :]
    cycle.reverse()
    return [*cycle, cycle[0]]


def build_task_graph(tasks: Iterable[Task]) -> TaskGraph:
    task_list = list(tasks)
    by_id: dict[str, Task] = {}
    input_index: dict[str, int] = {}
    for index, task in enumerate(task_list):
        if task.id in by_id:
            raise DuplicateTaskError(task.id)
        by_id[task.id] = task
        input_index[task.id] = index

    predecessors: dict[str, list[str]] = {}
    successors: dict[str, list[str]] = {task.id: [] for task in task_list}
    for task in task_list:
        preds: list[str] = []
        for dep_id in task.after:
            if dep_id not in by_id:
                raise DanglingReferenceError(task.id, dep_id)
            if dep_id == task.id:
                raise CyclicDependencyError([task.id, task.id])
            if dep_id not in preds:
                preds.append(dep_id)
        predecessors[task.id] = preds
        for dep_id in preds:
            successors[dep_id].append(task.id)

    # Kahn's algorithm; depth is assigned as each node is released.
    in_degree = {task_id: len(preds) for task_id, preds in predecessors.items()}
    depths: dict[str, int] = {}
    heap: list[tuple[int, int, str]] = []
    for task in task_list:
        if in_degree[task.id] == 0:
            depths[task.id] = 0
            heapq.heappush(heap, (0, input_index[task.id], task.id))

    released: list[str] = []
    while heap:
        _depth, _index, task_id = heapq.heappop(heap)
        released.append(task_id)
        for succ_id in successors[task_id]:
            depths[succ_id] = max(depths.get(succ_id, 0), depths[task_id] + 1)
            in_degree[succ_id] -= 1
            if in_degree[succ_id] == 0:
                heapq.heappush(heap, (depths[succ_id], input_index[succ_id], succ_id))

    if len(released) != len(task_list):
        released_ids = set(released)
        remaining = {task_id for task_id in by_id if task_id not in released_ids}
        raise CyclicDependencyError(_find_cycle(remaining, predecessors))

    order = sorted(released, key=lambda task_id: (depths[task_id], input_index[task_id]))

    layer_count = max(depths.values(), default=-1) + 1
    layers: list[list[str]] = [[] for _ in range(layer_count)]
    for task_id in order:
        layers[depths[task_id]].append(task_id)

    ancestors: dict[str, frozenset[str]] = {}
    for task_id in order:
        collected: set[str] = set()
        for pred in predecessors[task_id]:
            collected.add(pred)
            collected.update(ancestors[pred])
        ancestors[task_id] = frozenset(collected)

    descendants: dict[str, set[str]] = {task_id: set() for task_id in order}
    for task_id in order:
        for ancestor in ancestors[task_id]:
            descendants[ancestor].add(task_id)

    return TaskGraph(
        tasks=MappingProxyType(dict(by_id)),
        order=tuple(order),
        predecessors=MappingProxyType({key: tuple(value) for key, value in predecessors.items()}),
        successors=MappingProxyType({key: tuple(value) for key, value in successors.items()}),
        depths=MappingProxyType(dict(depths)),
        layers=tuple(tuple(layer) for layer in layers),
        ancestors=MappingProxyType(ancestors),
        descendants=MappingProxyType(
            {key: frozenset(value) for key, value in descendants.items()}
        ),
        input_index=MappingProxyType(input_index),
    )
