from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Generic, Hashable, TypeVar

K = TypeVar("K", bound=Hashable)
V = TypeVar("V")


@dataclass(frozen=True)
class CacheEntry(Generic[K, V]):
    key: K
    value: V
    expires_at: float


class ExpiringCache(Generic[K, V]):
    """Key/value store with a per-entry TTL.

    Expiry is lazy: a stale entry is dropped the first time it is read at or
    after ``expires_at``. There is no capacity bound.
    """

    def __init__(self, *, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: dict[K, CacheEntry[K, V]] = {}

    def get(self, key: K) -> V | None:
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() >= entry.expires_at:
            del self._entries[key]
            return None
        return entry.value

    def set(self, key: K, value: V, ttl_seconds: float) -> None:
        self._entries[key] = CacheEntry(key=key, value=value, expires_at=self._clock() + ttl_seconds)

    def invalidate(self, key: K) -> None:
        self._entries.pop(key, None)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


__all__ = ["CacheEntry", "ExpiringCache"]
