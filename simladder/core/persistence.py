from __future__ import annotations

import importlib
import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Optional

from .models import ConstraintReport, SimResult


class MemoryPersistence:
    def __init__(self) -> None:
        self._records: List[Dict[str, Any]] = []
        self._lock = threading.Lock()

    def persist_result(self, result: SimResult) -> None:
        self._append({"kind": "result", **result.to_dict()})

    def persist_report(self, report: ConstraintReport) -> None:
        self._append({"kind": "report", **report.to_dict()})

    def persist_outcome(self, outcome: Dict[str, Any]) -> None:
        self._append({"kind": "outcome", **outcome})

    def results(self, revision_id: str) -> List[SimResult]:
        return [
            SimResult.from_dict(record)
            for record in self._iter_records()
            if record.get("kind") == "result" and record.get("revision_id") == revision_id
        ]

    def reports(self, revision_id: str) -> List[Dict[str, Any]]:
        return [
            record
            for record in self._iter_records()
            if record.get("kind") == "report" and record.get("revision_id") == revision_id
        ]

    def outcomes(self, revision_id: str) -> List[Dict[str, Any]]:
        return [
            record
            for record in self._iter_records()
            if record.get("kind") == "outcome" and record.get("revision_id") == revision_id
        ]

    def _append(self, record: Dict[str, Any]) -> None:
        record.setdefault("ts", time.time())
        with self._lock:
            self._records.append(record)

    def _iter_records(self) -> List[Dict[str, Any]]:
        with self._lock:
            return list(self._records)


class JsonlPersistence(MemoryPersistence):
    """Append-only JSON lines file; one record per persisted object."""

    def __init__(self, path: Path) -> None:
        super().__init__()
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)

    def _append(self, record: Dict[str, Any]) -> None:
        record.setdefault("ts", time.time())
        line = json.dumps(record, sort_keys=True, ensure_ascii=True)
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")

    def _iter_records(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with self._lock:
            lines = self.path.read_text(encoding="utf-8").splitlines()
        return [json.loads(line) for line in lines if line.strip()]


def load_persistence(config: Any, root: Path) -> Any:
    """Resolve the persistence sink from the ``persistence`` config section.

    Accepts a mapping (``backend: memory|jsonl|callable``), a dotted path to a
    factory, or an object that already implements ``persist_result``.
    """
    if not config:
        return MemoryPersistence()
    if hasattr(config, "persist_result"):
        return config
    if isinstance(config, str):
        return _load_callable(config, root)
    if isinstance(config, dict):
        backend = config.get("backend", "memory")
        if backend == "memory":
            return MemoryPersistence()
        if backend == "jsonl":
            path = Path(config.get("path") or "results.jsonl")
            return JsonlPersistence(path if path.is_absolute() else root / path)
        if backend == "callable" and config.get("callable"):
            return _load_callable(config["callable"], root)
        raise ValueError(f"Unsupported persistence backend: {backend!r}")
    raise ValueError(f"Invalid persistence config: {config!r}")


def _load_callable(path: str, root: Optional[Path]) -> Any:
    module_name, _, attr = path.replace(":", ".").rpartition(".")
    if not module_name:
        raise ValueError(f"Invalid callable path: {path}")
    module = importlib.import_module(module_name)
    target = getattr(module, attr)
    if callable(target):
        if root is not None:
            try:
                return target(root)
            except TypeError:
                pass
        try:
            return target()
        except TypeError:
            return target
    return target
