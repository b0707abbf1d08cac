"""Periodic reminder scheduling into the notification outbox."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from tutorbot import templates
from tutorbot.db import Database
from tutorbot.directory import UserDirectory
from tutorbot.keys import outbox_key
from tutorbot.models import Deadline, Event, EventStatus, OutboxEntry
from tutorbot.timezones import utc_now, validate_timezone

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ReminderWindow:
    """Events starting in (now + earliest, now + latest] get this reminder."""

    reminder_type: str
    earliest: timedelta
    latest: timedelta


# Each window is at least one scheduler interval wide so no start time is skipped.
EVENT_WINDOWS = (
    ReminderWindow("24h_before", timedelta(hours=23), timedelta(hours=24)),
    ReminderWindow("2h_before", timedelta(hours=1), timedelta(hours=2)),
)
TASK_DUE_TODAY = "task_due_today"
TASK_OVERDUE = "task_overdue"
OVERDUE_LOOKBACK = timedelta(days=1)


class ReminderScheduler:
    """Creates outbox entries for upcoming events and due tasks.

    Entries are keyed by (entity type, entity id, user, reminder type) and
    created only if absent, so repeated runs never duplicate a reminder.
    """

    def __init__(
        self,
        db: Database,
        directory: UserDirectory,
        on_enqueued: Callable[[], None] | None = None,
        interval_seconds: float = 3600.0,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._directory = directory
        self._on_enqueued = on_enqueued
        self._interval_seconds = interval_seconds
        self._clock = clock
        self._stop_event = asyncio.Event()

    def run_once(self) -> int:
        """Scan once; returns the number of new outbox entries."""

        now = self._clock()
        created = 0
        for window in EVENT_WINDOWS:
            lower, upper = now + window.earliest, now + window.latest
            for event in self._db.list_events_between(lower, upper, statuses=(EventStatus.CONFIRMED,)):
                if lower < event.start_time <= upper:
                    created += self._enqueue_event(event, window.reminder_type, now)

        for deadline in self._db.list_open_deadlines_due_between(now - OVERDUE_LOOKBACK, now + timedelta(days=1)):
            reminder_type = self._task_reminder_type(deadline, now)
            if reminder_type is not None:
                created += self._enqueue_task(deadline, reminder_type, now)

        LOGGER.info("Reminder scan complete: %d new outbox entries", created)
        if created and self._on_enqueued is not None:
            self._on_enqueued()
        return created

    async def run_forever(self) -> None:
        """Scan on a fixed interval until stop() is called."""

        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception:  # noqa: BLE001
                LOGGER.exception("Reminder scan failed")
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval_seconds)
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        self._stop_event.set()

    def _task_reminder_type(self, deadline: Deadline, now: datetime) -> str | None:
        if deadline.due_date is None:
            return None
        if deadline.due_date < now:
            return TASK_OVERDUE
        zone = validate_timezone(self._directory.get_timezone(deadline.assignee) or "UTC")
        if deadline.due_date.astimezone(zone).date() == now.astimezone(zone).date():
            return TASK_DUE_TODAY
        return None

    def _enqueue_event(self, event: Event, reminder_type: str, now: datetime) -> int:
        title, body = templates.event_reminder(event.title, event.start_time, event.timezone, reminder_type)
        created = 0
        for user_id in event.participants:
            created += self._enqueue("event", event.id, user_id, reminder_type, title, body, now)
        return created

    def _enqueue_task(self, deadline: Deadline, reminder_type: str, now: datetime) -> int:
        title, body = templates.task_reminder(deadline.title, overdue=reminder_type == TASK_OVERDUE)
        return self._enqueue("task", deadline.id, deadline.assignee, reminder_type, title, body, now)

    def _enqueue(
        self,
        entity_type: str,
        entity_id: str,
        user_id: str,
        reminder_type: str,
        title: str,
        body: str,
        now: datetime,
    ) -> int:
        token = self._directory.get_push_token(user_id)
        if not token:
            LOGGER.debug("No push token for user %s; skipping %s reminder", user_id[:8], reminder_type)
            return 0
        created = self._db.create_outbox_entry_if_absent(
            OutboxEntry(
                id=outbox_key(entity_type, entity_id, user_id, reminder_type),
                entity_type=entity_type,
                entity_id=entity_id,
                target_user_id=user_id,
                reminder_type=reminder_type,
                title=title,
                body=body,
                data={"entity_type": entity_type, "entity_id": entity_id, "reminder_type": reminder_type},
                scheduled_for=now,
                push_token=token,
            )
        )
        return int(created)
