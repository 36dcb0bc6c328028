from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any

from workflow_creator.models import Worker

logger = logging.getLogger(__name__)

IndexEventHook = Callable[[dict[str, Any]], None]


@dataclass(frozen=True, slots=True)
class CapabilitySnapshot:
    """Immutable view of the index at one version.

    Readers keep using a snapshot they captured even while writers publish
    newer versions.
    """

    version: int
    workers: Mapping[str, Worker]
    by_capability: Mapping[str, tuple[str, ...]]

    def __len__(self) -> int:
        return len(self.workers)

    def __iter__(self) -> Iterator[Worker]:
        for name in sorted(self.workers):
            yield self.workers[name]

    def get(self, name: str) -> Worker | None:
        return self.workers.get(name)

    def available(self) -> list[Worker]:
        return [worker for worker in self if worker.available]

    def workers_for(self, capability: str) -> list[Worker]:
        return [self.workers[name] for name in self.by_capability.get(capability, ())]

    def candidates_for(self, capabilities: Iterable[str]) -> list[Worker]:
        names: set[str] = set()
        for capability in capabilities:
            names.update(self.by_capability.get(capability, ()))
        return [self.workers[name] for name in sorted(names)]

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "workers": [worker.to_dict() for worker in self],
        }


def _build_snapshot(version: int, workers: dict[str, Worker]) -> CapabilitySnapshot:
    by_capability: dict[str, list[str]] = {}
    for name in sorted(workers):
        for capability in workers[name].capabilities:
            by_capability.setdefault(capability, []).append(name)
    return CapabilitySnapshot(
        version=version,
        workers=MappingProxyType(dict(workers)),
        by_capability=MappingProxyType(
            {capability: tuple(names) for capability, names in by_capability.items()}
        ),
    )


class CapabilityIndex:
    """Copy-on-write registry of workers keyed by name and capability."""

    def __init__(
        self,
        workers: Iterable[Worker] | None = None,
        *,
        event_hook: IndexEventHook | None = None,
    ) -> None:
        self._lock = threading.Lock()
        self.event_hook = event_hook
        initial: dict[str, Worker] = {}
        for worker in workers or []:
            initial[worker.name] = worker
        self._snapshot = _build_snapshot(0, initial)

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def snapshot(self) -> CapabilitySnapshot:
        return self._snapshot

    @property
    def version(self) -> int:
        return self._snapshot.version

    def __len__(self) -> int:
        return len(self._snapshot)

    def __contains__(self, name: object) -> bool:
        return name in self._snapshot.workers

    def upsert(self, worker: Worker) -> CapabilitySnapshot:
        with self._lock:
            current = self._snapshot
            workers = dict(current.workers)
            replaced = worker.name in workers
            workers[worker.name] = worker
            self._snapshot = _build_snapshot(current.version + 1, workers)
            snapshot = self._snapshot
        action = "updated" if replaced else "registered"
        logger.debug("Worker %s %s (v%d)", worker.name, action, snapshot.version)
        self._emit(
            {
                "event": "worker_updated" if replaced else "worker_registered",
                "worker": worker.name,
                "version": snapshot.version,
            }
        )
        return snapshot

    def upsert_many(self, workers: Iterable[Worker]) -> CapabilitySnapshot:
        snapshot = self._snapshot
        for worker in workers:
            snapshot = self.upsert(worker)
        return snapshot

    def remove(self, name: str) -> bool:
        with self._lock:
            current = self._snapshot
            if name not in current.workers:
                return False
            workers = dict(current.workers)
            del workers[name]
            self._snapshot = _build_snapshot(current.version + 1, workers)
            version = self._snapshot.version
        logger.debug("Worker %s deregistered (v%d)", name, version)
        self._emit({"event": "worker_removed", "worker": name, "version": version})
        return True

    def set_available(self, name: str, available: bool) -> CapabilitySnapshot:
        with self._lock:
            current = self._snapshot
            worker = current.get(name)
            if worker is None:
                raise KeyError(f"Unknown worker: {name}")
            workers = dict(current.workers)
            workers[name] = Worker(
                name=worker.name,
                capabilities=worker.capabilities,
                tier=worker.tier,
                available=available,
                metadata=dict(worker.metadata),
            )
            self._snapshot = _build_snapshot(current.version + 1, workers)
            snapshot = self._snapshot
        logger.debug(
            "Worker %s marked %s (v%d)",
            name,
            "available" if available else "unavailable",
            snapshot.version,
        )
        self._emit(
            {
                "event": "worker_updated",
                "worker": name,
                "version": snapshot.version,
                "available": available,
            }
        )
        return snapshot
