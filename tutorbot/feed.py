"""Polling feed of inbound chat messages."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable

from tutorbot.db import Database
from tutorbot.models import Message

LOGGER = logging.getLogger(__name__)

# A message whose handler keeps raising is given up after this many tries.
MAX_HANDLER_ATTEMPTS = 3


class MessageFeed:
    """Hands unprocessed inbound messages to a handler, oldest first.

    A message is marked processed only after its handler returns, so a
    crash mid-handling means it is seen again on the next poll.
    """

    def __init__(
        self,
        db: Database,
        handler: Callable[[Message], Awaitable[Any]],
        poll_interval_seconds: float = 2.0,
        batch_size: int = 50,
    ) -> None:
        self._db = db
        self._handler = handler
        self._poll_interval_seconds = poll_interval_seconds
        self._batch_size = batch_size
        self._failures: dict[str, int] = {}
        self._stop_event = asyncio.Event()

    async def poll_once(self) -> int:
        messages = self._db.get_unprocessed_messages(self._batch_size)
        for message in messages:
            try:
                await self._handler(message)
            except Exception:  # noqa: BLE001
                attempts = self._failures.get(message.id, 0) + 1
                self._failures[message.id] = attempts
                LOGGER.exception("Handling message %s failed (attempt %d)", message.id[:8], attempts)
                if attempts < MAX_HANDLER_ATTEMPTS:
                    continue
                LOGGER.error("Giving up on message %s", message.id[:8])
            self._failures.pop(message.id, None)
            self._db.mark_message_processed(message.id)
        return len(messages)

    async def run_forever(self) -> None:
        """Poll until stop() is called."""

        while not self._stop_event.is_set():
            await self.poll_once()
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop_event.set()
