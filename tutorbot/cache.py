"""Injectable TTL-bounded caches."""

from __future__ import annotations

import time
from typing import Any, Callable, Generic, Hashable, TypeVar

V = TypeVar("V")

_MISSING = object()


class TTLCache(Generic[V]):
    """Small in-process cache whose entries expire after a fixed TTL.

    The clock is injectable so tests can advance time without sleeping.
    """

    def __init__(self, ttl_seconds: float, clock: Callable[[], float] = time.monotonic) -> None:
        self._ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: dict[Hashable, tuple[float, V]] = {}

    def get(self, key: Hashable, default: Any = None) -> V | Any:
        item = self._entries.get(key, _MISSING)
        if item is _MISSING:
            return default
        expires_at, value = item  # type: ignore[misc]
        if self._clock() >= expires_at:
            del self._entries[key]
            return default
        return value

    def set(self, key: Hashable, value: V) -> None:
        self._entries[key] = (self._clock() + self._ttl_seconds, value)

    def pop(self, key: Hashable) -> None:
        self._entries.pop(key, None)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [key for key, (expires_at, _) in self._entries.items() if now >= expires_at]
        for key in expired:
            del self._entries[key]
        return len(expired)

    def clear(self) -> None:
        self._entries.clear()

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def __len__(self) -> int:
        return len(self._entries)
