"""Invitation and RSVP tools."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from tutorbot import templates
from tutorbot.db import Database
from tutorbot.errors import ToolValidationError
from tutorbot.guard import WriteCategory
from tutorbot.models import ASSISTANT_SENDER_ID, Event, EventStatus, RsvpResponse
from tutorbot.timezones import utc_now
from tutorbot.tools.base import ExecutionContext, Tool
from tutorbot.tools.schemas import CreateInviteParams, RecordResponseParams, ToolName

LOGGER = logging.getLogger(__name__)

# How many of a conversation's recent events a stale event id may resolve to.
RECOVERY_SEARCH_LIMIT = 10


class CreateInviteTool(Tool):
    name = ToolName.RSVP_CREATE_INVITE
    description = "Post an invitation for an existing event so participants can reply yes or no."
    params_model = CreateInviteParams
    write_category = WriteCategory.MESSAGE_WRITE

    def __init__(self, db: Database) -> None:
        self._db = db

    async def run(self, params: CreateInviteParams, context: ExecutionContext) -> dict[str, Any]:
        event = self._db.get_event(params.event_id)
        if event is None or event.conversation_id != params.conversation_id:
            raise ToolValidationError(f"event {params.event_id} not found in this conversation")

        posted = self._db.find_message_by_meta(params.conversation_id, "invite_for", event.id)
        if posted is not None:
            return {"message_id": posted["id"], "event_id": event.id, "was_deduped": True}

        message_id = self._db.add_message(
            params.conversation_id,
            ASSISTANT_SENDER_ID,
            templates.invite_message(event.title, event.start_time, event.timezone, params.message),
            role="assistant",
            meta={"type": "invite", "invite_for": event.id},
        )
        LOGGER.info("Invite posted for event %s", event.id[:8])
        return {"message_id": message_id, "event_id": event.id, "was_deduped": False}


class RecordResponseTool(Tool):
    """Records one participant's accept/decline and recomputes the event status.

    A stale or mismatched event id is resolved to the participant's most
    recent pending event in the same conversation. The substitution is a
    guess, so it is logged and reported in the result.
    """

    name = ToolName.RSVP_RECORD_RESPONSE
    description = "Record a participant's accept or decline for an event."
    params_model = RecordResponseParams

    def __init__(self, db: Database, clock: Callable[[], datetime] = utc_now) -> None:
        self._db = db
        self._clock = clock

    async def run(self, params: RecordResponseParams, context: ExecutionContext) -> dict[str, Any]:
        now = self._clock()
        event = self._db.get_event(params.event_id)
        substituted = False
        if not self._matches(event, params):
            event = self._recover(params, now)
            substituted = True

        previous_status = event.status
        updated = self._db.record_rsvp(event.id, params.user_id, RsvpResponse(params.response), now)
        if updated is None:
            raise ToolValidationError(f"event {event.id} disappeared while recording response")
        LOGGER.info(
            "RSVP recorded: event=%s user=%s response=%s status %s -> %s",
            updated.id[:8],
            params.user_id[:8],
            params.response,
            previous_status.value,
            updated.status.value,
        )
        return {
            "event_id": updated.id,
            "title": updated.title,
            "response": params.response,
            "status": updated.status.value,
            "previous_status": previous_status.value,
            "substituted_event": substituted,
        }

    @staticmethod
    def _matches(event: Event | None, params: RecordResponseParams) -> bool:
        return (
            event is not None
            and event.conversation_id == params.conversation_id
            and params.user_id in event.participants
        )

    def _recover(self, params: RecordResponseParams, now: datetime) -> Event:
        recent = self._db.list_conversation_events(params.conversation_id, since=now, limit=RECOVERY_SEARCH_LIMIT)
        for candidate in recent:
            if candidate.status is EventStatus.PENDING and params.user_id in candidate.participants:
                LOGGER.warning(
                    "RSVP event id %s not usable; substituting most recent pending event %s",
                    params.event_id[:8],
                    candidate.id[:8],
                )
                return candidate
        raise ToolValidationError(f"event {params.event_id} not found and no pending event to match")
