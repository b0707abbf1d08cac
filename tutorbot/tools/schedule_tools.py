"""Event creation and conflict checking tools."""

from __future__ import annotations

import logging
import uuid
from typing import Any

from tutorbot.conflict_handler import ConflictHandler
from tutorbot.db import Database
from tutorbot.guard import WriteCategory
from tutorbot.keys import event_key
from tutorbot.models import Event
from tutorbot.timezones import to_utc_iso
from tutorbot.tools.base import ExecutionContext, Tool
from tutorbot.tools.schemas import CheckConflictsParams, CreateEventParams, ToolName

LOGGER = logging.getLogger(__name__)


def _event_data(event: Event, was_deduped: bool) -> dict[str, Any]:
    return {
        "event_id": event.id,
        "title": event.title,
        "start_time": to_utc_iso(event.start_time),
        "end_time": to_utc_iso(event.end_time),
        "timezone": event.timezone,
        "status": event.status.value,
        "has_conflict": event.has_conflict,
        "was_deduped": was_deduped,
    }


class CreateEventTool(Tool):
    """Creates a session once per (conversation, title, day).

    Conflicts are checked before the insert so ``has_conflict`` is stored with
    the event. A conflicting event gets a conflict card instead of the usual
    confirmation; ``confirmation_posted`` tells the caller which happened.
    """

    name = ToolName.SCHEDULE_CREATE_EVENT
    description = (
        "Create a calendar event for the conversation participants. "
        "Times are ISO-8601 UTC ending in Z; timezone is the IANA zone used for display."
    )
    params_model = CreateEventParams
    write_category = WriteCategory.EVENT_WRITE
    requires_timezone = True

    def __init__(self, db: Database, conflicts: ConflictHandler) -> None:
        self._db = db
        self._conflicts = conflicts

    async def run(self, params: CreateEventParams, context: ExecutionContext) -> dict[str, Any]:
        key = event_key(params.conversation_id, params.title, params.start_time)
        existing = self._db.get_event_by_key(key)
        if existing is not None:
            LOGGER.info("Event deduplicated: key=%s event=%s", key, existing.id[:8])
            return {**_event_data(existing, was_deduped=True), "confirmation_posted": False}

        participants = sorted(set(params.participants) | {params.created_by})
        check = self._conflicts.check(params.start_time, params.end_time, participants, params.timezone)
        event = Event(
            id=uuid.uuid4().hex,
            conversation_id=params.conversation_id,
            title=params.title,
            start_time=params.start_time,
            end_time=params.end_time,
            timezone=params.timezone,
            participants=participants,
            created_by=params.created_by,
            idempotency_key=key,
            has_conflict=check.result.has_conflict,
        )
        stored, created = self._db.insert_event_if_absent(event)
        if not created:
            LOGGER.info("Event created concurrently: key=%s event=%s", key, stored.id[:8])
            return {**_event_data(stored, was_deduped=True), "confirmation_posted": False}

        LOGGER.info(
            "Event created: id=%s conversation=%s has_conflict=%s",
            stored.id[:8],
            stored.conversation_id[:12],
            stored.has_conflict,
        )
        data = _event_data(stored, was_deduped=False)
        data["confirmation_posted"] = False
        if stored.has_conflict:
            self._conflicts.post_conflict_card(stored, check)
            data["confirmation_posted"] = True
            data["conflict"] = check.to_dict()
        return data


class CheckConflictsTool(Tool):
    """Reports conflicts and suggested alternatives for one user."""

    name = ToolName.SCHEDULE_CHECK_CONFLICTS
    description = "Check a proposed UTC time range against a user's existing events."
    params_model = CheckConflictsParams
    requires_timezone = True

    def __init__(self, conflicts: ConflictHandler) -> None:
        self._conflicts = conflicts

    async def run(self, params: CheckConflictsParams, context: ExecutionContext) -> dict[str, Any]:
        check = self._conflicts.check(params.start_time, params.end_time, [params.user_id], params.timezone)
        return check.to_dict()
