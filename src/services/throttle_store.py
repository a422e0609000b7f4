from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Protocol

logger = logging.getLogger(__name__)


class ThrottleStateStore(Protocol):
    def load(self, source_id: str) -> float | None: ...

    def save(self, source_id: str, timestamp: float) -> None: ...


class InMemoryThrottleStateStore(ThrottleStateStore):
    def __init__(self, initial: dict[str, float] | None = None) -> None:
        self._values: dict[str, float] = dict(initial or {})

    def load(self, source_id: str) -> float | None:
        return self._values.get(source_id)

    def save(self, source_id: str, timestamp: float) -> None:
        self._values[source_id] = timestamp


class JsonThrottleStateStore(ThrottleStateStore):
    """Keeps last-attempt timestamps in a small JSON document so cooldowns survive restarts."""

    def __init__(self, *, path: Path) -> None:
        self.path = path

    def load(self, source_id: str) -> float | None:
        raw = self._read().get(source_id)
        if raw is None:
            return None
        try:
            return float(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring unparseable throttle timestamp %r for %s", raw, source_id)
            return None

    def save(self, source_id: str, timestamp: float) -> None:
        record = self._read()
        record[source_id] = timestamp
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump(record, handle)
        tmp_path.replace(self.path)

    def _read(self) -> dict[str, object]:
        if not self.path.exists():
            return {}
        try:
            with self.path.open("r", encoding="utf-8") as handle:
                record = json.load(handle)
        except (OSError, ValueError):
            logger.warning("Throttle state at %s is unreadable, starting fresh", self.path)
            return {}
        if not isinstance(record, dict):
            return {}
        return record


__all__ = ["InMemoryThrottleStateStore", "JsonThrottleStateStore", "ThrottleStateStore"]
