from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable

from .throttle_store import InMemoryThrottleStateStore, ThrottleStateStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ThrottleState:
    source_id: str
    last_attempt_at: float


class AttemptThrottle:
    """Per-source cooldown between live fetch attempts.

    The in-process value is mirrored to a durable store; on every read the
    more recent of the two wins, and a recorded timestamp never moves back.
    """

    def __init__(
        self,
        *,
        store: ThrottleStateStore | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store or InMemoryThrottleStateStore()
        self._clock = clock
        self._states: dict[str, ThrottleState] = {}

    def last_attempt_at(self, source_id: str) -> float | None:
        in_memory = self._states.get(source_id)
        persisted = self._load_persisted(source_id)

        candidates = [persisted] if persisted is not None else []
        if in_memory is not None:
            candidates.append(in_memory.last_attempt_at)
        if not candidates:
            return None
        latest = max(candidates)
        if in_memory is None or latest > in_memory.last_attempt_at:
            self._states[source_id] = ThrottleState(source_id=source_id, last_attempt_at=latest)
        return latest

    def should_attempt(self, source_id: str, cooldown_seconds: float, forced: bool = False) -> bool:
        if forced:
            return True
        last = self.last_attempt_at(source_id)
        if last is None:
            return True
        return self._clock() - last > cooldown_seconds

    def record_attempt(self, source_id: str, at_time: float | None = None) -> float:
        timestamp = self._clock() if at_time is None else at_time
        latest = self.last_attempt_at(source_id)
        if latest is not None and latest > timestamp:
            timestamp = latest
        self._states[source_id] = ThrottleState(source_id=source_id, last_attempt_at=timestamp)
        try:
            self._store.save(source_id, timestamp)
        except OSError:
            logger.warning("Could not persist throttle state for %s", source_id, exc_info=True)
        return timestamp

    def _load_persisted(self, source_id: str) -> float | None:
        try:
            return self._store.load(source_id)
        except OSError:
            logger.warning("Could not read persisted throttle state for %s", source_id, exc_info=True)
            return None


__all__ = ["AttemptThrottle", "ThrottleState"]
