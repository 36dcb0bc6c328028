from __future__ import annotations

import copy
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from workflow_creator.models import utcnow_iso


class ContextAccessError(KeyError):
    """Raised when a task reads a fragment outside its transitive predecessors."""


class ContextWriteError(RuntimeError):
    """Raised when a task's fragment is recorded twice."""


@dataclass(frozen=True, slots=True)
class ContextFragment:
    task_id: str
    data: Mapping[str, Any]
    schema: str | None = None
    produced_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "schema": self.schema,
            "produced_at": self.produced_at,
            "data": dict(self.data),
        }


class ContextView(Mapping[str, Any]):
    """Read-only context handed to one task.

    Key lookup searches visible fragments from the most recent upstream task
    backwards, then the run inputs.
    """

    def __init__(
        self,
        task_id: str,
        fragments: Mapping[str, ContextFragment],
        inputs: Mapping[str, Any],
        merged: Any = None,
    ) -> None:
        self.task_id = task_id
        self._fragments = dict(fragments)
        self._inputs = inputs
        self.merged = merged

    def __getitem__(self, key: str) -> Any:
        for fragment in reversed(list(self._fragments.values())):
            if key in fragment.data:
                return fragment.data[key]
        if key in self._inputs:
            return self._inputs[key]
        raise KeyError(key)

    def __iter__(self) -> Iterator[str]:
        seen: set[str] = set()
        for source in self._fragments.values():
            for key in source.data:
                if key not in seen:
                    seen.add(key)
                    yield key
        for key in self._inputs:
            if key not in seen:
                seen.add(key)
                yield key

    def __len__(self) -> int:
        return sum(1 for _ in self)

    @property
    def inputs(self) -> Mapping[str, Any]:
        return MappingProxyType(dict(self._inputs))

    @property
    def upstream_ids(self) -> tuple[str, ...]:
        return tuple(self._fragments)

    @property
    def fragments(self) -> Mapping[str, ContextFragment]:
        return MappingProxyType(self._fragments)

    def fragment(self, task_id: str) -> ContextFragment:
        if task_id not in self._fragments:
            raise ContextAccessError(
                f"Task '{self.task_id}' cannot read context of '{task_id}': "
                "not a completed upstream task."
            )
        return self._fragments[task_id]

    def to_dict(self) -> dict[str, Any]:
        merged = self.merged.to_dict() if hasattr(self.merged, "to_dict") else self.merged
        return {
            "task_id": self.task_id,
            "inputs": dict(self._inputs),
            "fragments": {
                task_id: dict(fragment.data) for task_id, fragment in self._fragments.items()
            },
            "merged": merged,
        }


class ExecutionContext:
    """Per-run store of output fragments keyed by task id."""

    def __init__(self, inputs: Mapping[str, Any] | None = None) -> None:
        self._inputs = MappingProxyType(copy.deepcopy(dict(inputs or {})))
        self._fragments: dict[str, ContextFragment] = {}

    def __contains__(self, task_id: object) -> bool:
        return task_id in self._fragments

    def __len__(self) -> int:
        return len(self._fragments)

    @property
    def inputs(self) -> Mapping[str, Any]:
        return self._inputs

    @property
    def fragments(self) -> Mapping[str, ContextFragment]:
        return MappingProxyType(self._fragments)

    def record(
        self, task_id: str, data: Mapping[str, Any] | None, *, schema: str | None = None
    ) -> ContextFragment:
        if task_id in self._fragments:
            raise ContextWriteError(f"Context fragment for '{task_id}' already recorded.")
        fragment = ContextFragment(
            task_id=task_id,
            data=MappingProxyType(copy.deepcopy(dict(data or {}))),
            schema=schema,
        )
        self._fragments[task_id] = fragment
        return fragment

    def fragment(self, task_id: str) -> ContextFragment:
        return self._fragments[task_id]

    def view(
        self,
        task_id: str,
        visible: Iterable[str],
        *,
        merged: Any = None,
    ) -> ContextView:
        """Build the view for ``task_id`` from ``visible`` ids in topological order."""
        fragments = {
            upstream: self._fragments[upstream]
            for upstream in visible
            if upstream in self._fragments
        }
        return ContextView(task_id, fragments, self._inputs, merged=merged)

    def to_dict(self) -> dict[str, Any]:
        return {
            task_id: {"schema": fragment.schema, "data": dict(fragment.data)}
            for task_id, fragment in self._fragments.items()
        }
