"""Push alerts for urgent chat messages."""

from __future__ import annotations

import logging
from typing import Callable

from tutorbot import templates
from tutorbot.classifiers.urgency import UrgencyResult
from tutorbot.db import Database
from tutorbot.directory import UserDirectory
from tutorbot.keys import outbox_key
from tutorbot.models import Message, OutboxEntry
from tutorbot.timezones import utc_now

LOGGER = logging.getLogger(__name__)

URGENT_REMINDER_TYPE = "urgent"


class UrgentNotifier:
    """Enqueues one urgent alert per other participant when a message is push-worthy."""

    def __init__(
        self,
        db: Database,
        directory: UserDirectory,
        on_enqueued: Callable[[], None] | None = None,
    ) -> None:
        self._db = db
        self._directory = directory
        self._on_enqueued = on_enqueued

    def notify(self, message: Message, urgency: UrgencyResult) -> int:
        if not urgency.should_notify:
            return 0
        title, body = templates.urgent_alert(self._directory.get_display_name(message.sender_id), message.text)
        created = 0
        for user_id in self._db.get_participants(message.conversation_id):
            if user_id == message.sender_id:
                continue
            token = self._directory.get_push_token(user_id)
            if not token:
                continue
            created += int(
                self._db.create_outbox_entry_if_absent(
                    OutboxEntry(
                        id=outbox_key("message", message.id, user_id, URGENT_REMINDER_TYPE),
                        entity_type="message",
                        entity_id=message.id,
                        target_user_id=user_id,
                        reminder_type=URGENT_REMINDER_TYPE,
                        title=title,
                        body=body,
                        data={
                            "entity_type": "message",
                            "conversation_id": message.conversation_id,
                            "message_id": message.id,
                            "category": urgency.category,
                        },
                        scheduled_for=utc_now(),
                        push_token=token,
                    )
                )
            )
        LOGGER.info("Urgent message %s: %d alert(s) enqueued", message.id[:8], created)
        if created and self._on_enqueued is not None:
            self._on_enqueued()
        return created
