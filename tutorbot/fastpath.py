"""Deterministic scheduling without a tool-calling completion."""

from __future__ import annotations

import logging
import re

from tutorbot import templates, timeparse
from tutorbot.classifiers.disambiguation import TimeDisambiguator
from tutorbot.models import Message
from tutorbot.timezones import to_utc_iso
from tutorbot.tools.base import ExecutionContext, ToolOutcome
from tutorbot.tools.executor import ToolExecutor
from tutorbot.tools.schemas import ToolName

LOGGER = logging.getLogger(__name__)

DEFAULT_TITLE = "Session"

_SESSION_TITLE = re.compile(
    r"\b(?P<subject>[a-z][a-z0-9-]*)\s+(?P<kind>lesson|session|class|tutoring|review|meeting)s?\b",
    re.IGNORECASE,
)
_BARE_SESSION = re.compile(r"\b(?P<kind>lesson|session|class|tutoring|review|meeting)s?\b", re.IGNORECASE)
_NOT_A_SUBJECT = frozenset(
    """
    a an the our my your their his her this that next another first last same usual regular
    book schedule set plan add have need want let's lets can could we i you to for
    today tonight tomorrow monday tuesday wednesday thursday friday saturday sunday
    """.split()
)


def extract_event_title(text: str) -> str | None:
    """Title like "Math lesson" from "math lesson tomorrow at 3pm"; None if no session word."""

    for match in _SESSION_TITLE.finditer(text):
        subject = match.group("subject").lower()
        if subject in _NOT_A_SUBJECT:
            continue
        return f"{subject.capitalize()} {match.group('kind').lower()}"
    bare = _BARE_SESSION.search(text)
    if bare:
        return bare.group("kind").capitalize()
    return None


class FastPathScheduler:
    """Parses the time itself and creates the event through the executor.

    Returns None whenever the message needs the model: no date found, or an
    ambiguous time the disambiguator could not settle.
    """

    def __init__(self, executor: ToolExecutor, disambiguator: TimeDisambiguator | None = None) -> None:
        self._executor = executor
        self._disambiguator = disambiguator

    async def handle(
        self,
        message: Message,
        timezone_name: str,
        participants: list[str],
        context: ExecutionContext,
    ) -> list[ToolOutcome] | None:
        parsed = timeparse.parse(message.text, timezone_name, reference=message.created_at)
        if parsed.error == timeparse.PAST_DATE:
            LOGGER.info("Fast path: rejecting past date in message %s", message.id[:8])
            result = await self._executor.execute(
                ToolName.MESSAGES_POST_SYSTEM,
                {
                    "conversation_id": message.conversation_id,
                    "text": templates.past_date_rejection(parsed.matched_text),
                    "meta": {"type": "past_date", "reply_to": message.id},
                },
                context,
            )
            return [ToolOutcome(ToolName.MESSAGES_POST_SYSTEM, result)]

        start, end = parsed.start, parsed.end
        if parsed.needs_disambiguation:
            chosen = None
            if self._disambiguator is not None:
                chosen = await self._disambiguator.choose(message.text, parsed.candidates, timezone_name)
            if chosen is None:
                LOGGER.info("Fast path: ambiguous time in message %s, deferring to model", message.id[:8])
                return None
            start, end = chosen.start, chosen.end
        if start is None or end is None:
            LOGGER.info("Fast path: no usable time in message %s (%s)", message.id[:8], parsed.error)
            return None

        params = {
            "title": extract_event_title(message.text) or DEFAULT_TITLE,
            "start_time": to_utc_iso(start),
            "end_time": to_utc_iso(end),
            "timezone": timezone_name,
            "participants": participants,
            "conversation_id": message.conversation_id,
            "created_by": message.sender_id,
        }
        result = await self._executor.execute(ToolName.SCHEDULE_CREATE_EVENT, params, context)
        return [ToolOutcome(ToolName.SCHEDULE_CREATE_EVENT, result, params)]
