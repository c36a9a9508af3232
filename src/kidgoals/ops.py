"""Operational utilities for KidGoals."""

from __future__ import annotations

import json
import threading
from collections import deque
from pathlib import Path

from .models import utcnow


class StructuredLogger:
    """Write JSON lines log entries for admin inspection.

    Safe to share between worker threads. Memory keeps the latest
    ``max_entries`` entries; the file keeps all of them.
    """

    def __init__(self, *, path: Path | None = None, max_entries: int = 10_000) -> None:
        self.path = path
        self._entries: deque[dict] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def log(self, event_type: str, **fields: object) -> dict:
        entry = {"timestamp": utcnow().isoformat(), "event": event_type, **fields}
        with self._lock:
            self._entries.append(entry)
            if self.path:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                with self.path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        with self._lock:
            return tuple(self._entries)[-limit:]

    def events(self, event_type: str) -> tuple[dict, ...]:
        with self._lock:
            return tuple(entry for entry in self._entries if entry["event"] == event_type)


__all__ = ["StructuredLogger"]
