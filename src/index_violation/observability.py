"""Run counters and summary export."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
import json
from pathlib import Path
import threading
from typing import Any, Mapping


class AtomicCounter:
    """Monotonically increasing counter safe to bump from several threads."""

    def __init__(self, value: int = 0) -> None:
        self._value = int(value)
        self._lock = threading.Lock()

    def add(self, delta: int = 1) -> int:
        if delta < 0:
            raise ValueError("counter delta must be >= 0")
        with self._lock:
            self._value += int(delta)
            return self._value

    def get(self) -> int:
        with self._lock:
            return self._value


@dataclass
class ScanCounters:
    """Process-wide totals shared by every scan segment.

    Limit checks read these without coordination, so a segment may observe a
    value that other segments have already moved past.
    """

    items_scanned: AtomicCounter = field(default_factory=AtomicCounter)
    violations_found: AtomicCounter = field(default_factory=AtomicCounter)
    violations_deleted: AtomicCounter = field(default_factory=AtomicCounter)

    def snapshot(self) -> dict[str, int]:
        return {
            "items_scanned": self.items_scanned.get(),
            "violations_found": self.violations_found.get(),
            "violations_deleted": self.violations_deleted.get(),
        }


def export_summary(path: str | Path, payload: Mapping[str, Any]) -> dict[str, Any]:
    body = {"generated_at_utc": _utc_now(), **dict(payload)}
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(body, sort_keys=True, ensure_ascii=True, indent=2) + "\n", encoding="utf-8")
    return body


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
