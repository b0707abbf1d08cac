"""Reminder scheduling tool backed by the notification outbox."""

from __future__ import annotations

import logging
from typing import Any, Callable

from tutorbot import templates
from tutorbot.db import Database
from tutorbot.directory import UserDirectory
from tutorbot.errors import ToolValidationError
from tutorbot.keys import outbox_key
from tutorbot.models import OutboxEntry
from tutorbot.timezones import to_utc_iso
from tutorbot.tools.base import ExecutionContext, Tool
from tutorbot.tools.schemas import ScheduleReminderParams, ToolName

LOGGER = logging.getLogger(__name__)

REMINDER_TYPES = {
    "24h": "24h_before",
    "2h": "2h_before",
    "due": "task_due_today",
}


class ScheduleReminderTool(Tool):
    """Enqueues one reminder per (entity, user, reminder type)."""

    name = ToolName.REMINDERS_SCHEDULE
    description = "Schedule a push reminder for an event or task at a UTC time ending in Z."
    params_model = ScheduleReminderParams

    def __init__(
        self,
        db: Database,
        directory: UserDirectory,
        on_enqueued: Callable[[], None] | None = None,
    ) -> None:
        self._db = db
        self._directory = directory
        self._on_enqueued = on_enqueued

    async def run(self, params: ScheduleReminderParams, context: ExecutionContext) -> dict[str, Any]:
        reminder_type = REMINDER_TYPES[params.reminder_type]
        title, body = self._render(params, reminder_type)

        token = self._directory.get_push_token(params.target_user_id)
        if not token:
            raise ToolValidationError(f"user {params.target_user_id} has no push token")

        entry = OutboxEntry(
            id=outbox_key(params.entity_type, params.entity_id, params.target_user_id, reminder_type),
            entity_type=params.entity_type,
            entity_id=params.entity_id,
            target_user_id=params.target_user_id,
            reminder_type=reminder_type,
            title=title,
            body=body,
            data={"entity_type": params.entity_type, "entity_id": params.entity_id, "reminder_type": reminder_type},
            scheduled_for=params.scheduled_for,
            push_token=token,
        )
        created = self._db.create_outbox_entry_if_absent(entry)
        if created:
            LOGGER.info("Reminder enqueued: %s at %s", entry.id, to_utc_iso(entry.scheduled_for))
            if self._on_enqueued is not None:
                self._on_enqueued()
        else:
            LOGGER.info("Reminder already enqueued: %s", entry.id)
        return {
            "outbox_id": entry.id,
            "reminder_type": reminder_type,
            "scheduled_for": to_utc_iso(entry.scheduled_for),
            "was_deduped": not created,
        }

    def _render(self, params: ScheduleReminderParams, reminder_type: str) -> tuple[str, str]:
        if params.entity_type == "event":
            event = self._db.get_event(params.entity_id)
            if event is None:
                raise ToolValidationError(f"event {params.entity_id} not found")
            return templates.event_reminder(event.title, event.start_time, event.timezone, reminder_type)
        deadline = self._db.get_deadline(params.entity_id)
        if deadline is None:
            raise ToolValidationError(f"task {params.entity_id} not found")
        return templates.task_reminder(deadline.title, overdue=False)
