"""Outbox delivery worker."""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Callable

from tutorbot.db import Database
from tutorbot.models import OutboxEntry, OutboxStatus
from tutorbot.notifications.push import PushMessage, PushProvider, PushTicket, is_valid_push_token
from tutorbot.timezones import to_utc_iso, utc_now

LOGGER = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
# Delay after the n-th failed attempt is RETRY_BACKOFF_SECONDS[n-1].
RETRY_BACKOFF_SECONDS = (1, 2, 4)
MAX_ATTEMPTS_REACHED = "MAX_ATTEMPTS_REACHED"
INVALID_PUSH_TOKEN = "INVALID_PUSH_TOKEN"


class OutboxWorker:
    """Delivers due outbox entries with bounded retries.

    pending -> sent on success; pending -> pending with a later
    ``scheduled_for`` while attempts remain; pending -> failed after the
    last attempt. Only ``manual_retry`` moves a failed entry back to pending.
    """

    def __init__(
        self,
        db: Database,
        provider: PushProvider,
        poll_interval_seconds: float = 5.0,
        batch_size: int = 100,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._provider = provider
        self._poll_interval_seconds = poll_interval_seconds
        self._batch_size = batch_size
        self._clock = clock
        self._stop_event = asyncio.Event()
        self._wake_event = asyncio.Event()

    async def process_entry(self, entry_id: str) -> OutboxStatus | None:
        """Attempt one delivery; returns the entry's resulting status."""

        entry = self._db.get_outbox_entry(entry_id)
        if entry is None:
            return None
        now = self._clock()
        if entry.status is not OutboxStatus.PENDING or entry.scheduled_for > now:
            return entry.status

        if entry.attempts >= MAX_ATTEMPTS:
            self._fail(entry, entry.attempts, entry.last_error or MAX_ATTEMPTS_REACHED)
            return OutboxStatus.FAILED
        if not is_valid_push_token(entry.push_token):
            self._fail(entry, entry.attempts, INVALID_PUSH_TOKEN)
            return OutboxStatus.FAILED

        ticket = await self._deliver(entry)
        attempts = entry.attempts + 1
        if ticket.ok:
            self._db.update_outbox_entry(entry.id, OutboxStatus.SENT, attempts, sent_at=now)
            LOGGER.info("Outbox %s sent (attempt %d)", entry.id, attempts)
            return OutboxStatus.SENT

        if attempts < MAX_ATTEMPTS:
            retry_at = now + timedelta(seconds=RETRY_BACKOFF_SECONDS[attempts - 1])
            self._db.update_outbox_entry(
                entry.id, OutboxStatus.PENDING, attempts, scheduled_for=retry_at, last_error=ticket.error
            )
            LOGGER.warning(
                "Outbox %s attempt %d failed (%s); retrying at %s", entry.id, attempts, ticket.error, to_utc_iso(retry_at)
            )
            return OutboxStatus.PENDING

        self._fail(entry, attempts, ticket.error or "delivery failed")
        return OutboxStatus.FAILED

    async def run_once(self) -> int:
        """Process every due entry once; returns how many were attempted."""

        due = self._db.list_due_outbox_entries(self._clock(), limit=self._batch_size)
        for entry in due:
            try:
                await self.process_entry(entry.id)
            except Exception:  # noqa: BLE001
                LOGGER.exception("Outbox entry %s could not be processed", entry.id)
        return len(due)

    async def run_forever(self) -> None:
        """Poll for due entries until stop() is called; kick() wakes it early."""

        while not self._stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(self._wake_event.wait(), timeout=self._poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
            self._wake_event.clear()

    def kick(self) -> None:
        self._wake_event.set()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()

    def manual_retry(self, entry_id: str) -> bool:
        """Reset a failed entry to pending with zero attempts, due now."""

        reset = self._db.reset_failed_outbox_entry(entry_id, self._clock())
        if reset:
            LOGGER.info("Outbox %s manually reset to pending", entry_id)
            self.kick()
        else:
            LOGGER.info("Outbox %s not reset (missing or not failed)", entry_id)
        return reset

    def list_failed(self, limit: int = 20) -> list[OutboxEntry]:
        return self._db.list_outbox_entries(OutboxStatus.FAILED, limit=limit)

    async def _deliver(self, entry: OutboxEntry) -> PushTicket:
        message = PushMessage(
            token=entry.push_token or "",
            title=entry.title,
            body=entry.body,
            data={**entry.data, "scheduled_for": to_utc_iso(entry.scheduled_for)},
        )
        try:
            return await self._provider.send(message)
        except Exception as exc:  # noqa: BLE001
            return PushTicket(ok=False, error=f"{type(exc).__name__}: {exc}")

    def _fail(self, entry: OutboxEntry, attempts: int, error: str) -> None:
        self._db.update_outbox_entry(entry.id, OutboxStatus.FAILED, attempts, last_error=error)
        LOGGER.error("Outbox %s failed after %d attempt(s): %s", entry.id, attempts, error)
