"""Per-run write-once guard."""

from __future__ import annotations

import logging
import time
from contextlib import contextmanager
from enum import Enum
from typing import Any, Callable, Iterator

from tutorbot.cache import TTLCache

LOGGER = logging.getLogger(__name__)


class WriteCategory(str, Enum):
    EVENT_WRITE = "event-write"
    TASK_WRITE = "task-write"
    MESSAGE_WRITE = "message-write"
    OTHER = "other"


class WriteExecutionGuard:
    """Tracks which write categories already ran for a correlation id.

    Best-effort, same-process only. Store-level idempotency keys remain the
    real duplicate protection. Entries must be released when the run ends;
    the TTL only bounds growth if a caller forgets.
    """

    def __init__(self, ttl_seconds: float = 600.0, clock: Callable[[], float] = time.monotonic) -> None:
        self._runs: TTLCache[dict[WriteCategory, dict[str, Any]]] = TTLCache(ttl_seconds, clock=clock)

    def lookup(self, correlation_id: str, category: WriteCategory) -> dict[str, Any] | None:
        """Return the data recorded for an earlier write in this run, if any."""

        if category is WriteCategory.OTHER:
            return None
        writes = self._runs.get(correlation_id)
        if not writes:
            return None
        return writes.get(category)

    def record(self, correlation_id: str, category: WriteCategory, data: dict[str, Any]) -> None:
        if category is WriteCategory.OTHER:
            return
        writes = self._runs.get(correlation_id) or {}
        writes[category] = dict(data)
        self._runs.set(correlation_id, writes)

    def release(self, correlation_id: str) -> None:
        self._runs.pop(correlation_id)
        LOGGER.debug("Released write guard for correlation_id=%s", correlation_id[:12])

    @contextmanager
    def scope(self, correlation_id: str) -> Iterator[None]:
        """Release the guard for a correlation id when the block exits."""

        try:
            yield
        finally:
            self.release(correlation_id)

    def active_runs(self) -> int:
        self._runs.purge_expired()
        return len(self._runs)
