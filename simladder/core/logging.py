from __future__ import annotations

import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def get_logger(name: str, logs_dir: Path, level: str = "INFO") -> logging.Logger:
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger
    logger.setLevel(level.upper())
    logs_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(logs_dir / f"{name}.log")
    formatter = logging.Formatter(LOG_FORMAT)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return logger


class EventLogger:
    """Append-only JSONL sink for engine lifecycle events."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    def record(self, event: Dict[str, Any]) -> None:
        payload = dict(event)
        payload.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
        line = json.dumps(payload, sort_keys=True, ensure_ascii=True, default=str)
        with self._lock, self.path.open("a", encoding="utf-8") as handle:
            handle.write(line + "\n")


class NullEventLogger:
    def record(self, event: Dict[str, Any]) -> None:
        return


class MemoryEventLogger:
    def __init__(self) -> None:
        self.events: List[Dict[str, Any]] = []

    def record(self, event: Dict[str, Any]) -> None:
        self.events.append(dict(event))

    def of(self, name: str) -> List[Dict[str, Any]]:
        return [event for event in self.events if event.get("event") == name]


def get_event_logger(logs_dir: Optional[Path]) -> Any:
    if logs_dir is None:
        return NullEventLogger()
    return EventLogger(logs_dir / "events.jsonl")


def log_event(sink: Any, event: str, **data: Any) -> None:
    try:
        sink.record({"event": event, **data})
    except OSError as exc:
        logging.getLogger(__name__).warning("Failed to record event %s: %s", event, exc)
