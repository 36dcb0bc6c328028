from __future__ import annotations

import json
import os
import re
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any

from workflow_creator.models import WorkflowResult, utcnow_iso

_RUN_ID_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")


class RunStoreError(RuntimeError):
    """Raised when run records cannot be read or written."""


class RunStore:
    """Persists workflow results as JSON envelopes, one file per run."""

    SCHEMA_VERSION = 1

    def __init__(self, root: Path, runs_dir: str = ".workflow/runs") -> None:
        self.root = root.resolve()
        runs_path = Path(runs_dir)
        self.runs_dir = runs_path if runs_path.is_absolute() else self.root / runs_path
        self.lock_file = self.runs_dir / ".lock"

    def _ensure_dir(self) -> None:
        self.runs_dir.mkdir(parents=True, exist_ok=True)

    def _run_file(self, run_id: str) -> Path:
        if not _RUN_ID_PATTERN.match(run_id):
            raise RunStoreError(f"Invalid run id: {run_id}")
        return self.runs_dir / f"{run_id}.json"

    @contextmanager
    def _lock(self, timeout_seconds: float = 3.0):
        self._ensure_dir()
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise RunStoreError("Timed out waiting for run store lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_envelope(self, path: Path) -> dict[str, Any] | None:
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise RunStoreError(f"Corrupt run record: {path.name}") from exc
        if not isinstance(payload, dict) or "data" not in payload:
            raise RunStoreError(f"Run record {path.name} is not a valid envelope.")
        return payload

    def save(self, result: WorkflowResult | dict[str, Any]) -> Path:
        data = result.to_dict() if isinstance(result, WorkflowResult) else dict(result)
        run_id = str(data.get("run_id") or "")
        path = self._run_file(run_id)
        with self._lock():
            current = self._read_envelope(path)
            revision = int(current.get("revision", 0)) if current else 0
            envelope = {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision + 1,
                "updated_at": utcnow_iso(),
                "data": data,
            }
            serialized = json.dumps(envelope, ensure_ascii=False, indent=2, default=str)
            path.write_text(serialized + "\n", encoding="utf-8")
        return path

    def get_envelope(self, run_id: str) -> dict[str, Any]:
        envelope = self._read_envelope(self._run_file(run_id))
        if envelope is None:
            raise RunStoreError(f"Run not found: {run_id}")
        return envelope

    def load(self, run_id: str) -> dict[str, Any]:
        return self.get_envelope(run_id)["data"]

    def list_runs(self) -> list[dict[str, Any]]:
        if not self.runs_dir.exists():
            return []
        summaries: list[dict[str, Any]] = []
        for path in sorted(self.runs_dir.glob("*.json")):
            try:
                envelope = self._read_envelope(path)
            except RunStoreError:
                continue
            if envelope is None:
                continue
            data = envelope["data"]
            tasks = data.get("tasks", [])
            summaries.append(
                {
                    "run_id": data.get("run_id", path.stem),
                    "status": data.get("status"),
                    "pattern": data.get("pattern"),
                    "started_at": data.get("started_at"),
                    "tasks": len(tasks) if isinstance(tasks, list) else 0,
                    "revision": envelope.get("revision"),
                }
            )
        summaries.sort(key=lambda item: str(item.get("started_at") or ""))
        return summaries
