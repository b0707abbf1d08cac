"""Conflict checks against stored events, conflict cards and rescheduling."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Iterable

from tutorbot import templates
from tutorbot.conflicts import (
    AlternativeSlot,
    BusySlot,
    ConflictResult,
    check_conflicts,
    find_overlapping_pairs,
    generate_alternatives,
)
from tutorbot.db import Database
from tutorbot.directory import UserDirectory
from tutorbot.models import ASSISTANT_SENDER_ID, Event
from tutorbot.timezones import parse_utc_iso, to_utc_iso, utc_now

LOGGER = logging.getLogger(__name__)

MONITOR_HORIZON_DAYS = 14
# Existing events this far either side of a proposal are enough to judge buffers.
_SEARCH_MARGIN = timedelta(days=1)


@dataclass(slots=True)
class ConflictCheck:
    result: ConflictResult
    alternatives: list[AlternativeSlot] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        result = self.result
        return {
            "has_conflict": result.has_conflict,
            "severity": result.severity.value if result.severity else None,
            "conflict_type": result.conflict_type.value if result.conflict_type else None,
            "recommendation": result.recommendation,
            "conflicts": [
                {
                    "event_id": detail.slot.id,
                    "title": detail.slot.title,
                    "start_time": to_utc_iso(detail.slot.start),
                    "end_time": to_utc_iso(detail.slot.end),
                    "type": detail.conflict_type.value,
                    "severity": detail.severity.value,
                }
                for detail in result.conflicts
            ],
            "alternatives": [slot.to_dict() for slot in self.alternatives],
        }


@dataclass(slots=True)
class RescheduleOutcome:
    success: bool
    event: Event | None = None
    already_applied: bool = False
    error: str | None = None


class ConflictHandler:
    def __init__(
        self,
        db: Database,
        directory: UserDirectory,
        minimum_buffer_minutes: int = 15,
        allow_back_to_back: bool = False,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._db = db
        self._directory = directory
        self._minimum_buffer_minutes = minimum_buffer_minutes
        self._allow_back_to_back = allow_back_to_back
        self._clock = clock

    def busy_slots(
        self,
        user_ids: Iterable[str],
        start: datetime,
        end: datetime,
        exclude_event_id: str | None = None,
    ) -> list[BusySlot]:
        events = self._db.list_events_for_users(
            user_ids, start - _SEARCH_MARGIN, end + _SEARCH_MARGIN, exclude_event_id=exclude_event_id
        )
        return [BusySlot(start=e.start_time, end=e.end_time, id=e.id, title=e.title) for e in events]

    def check(
        self,
        start: datetime,
        end: datetime,
        participants: Iterable[str],
        timezone_name: str,
        exclude_event_id: str | None = None,
        with_alternatives: bool = True,
    ) -> ConflictCheck:
        people = list(participants)
        busy = self.busy_slots(people, start, end, exclude_event_id=exclude_event_id)
        result = check_conflicts(
            start,
            end,
            busy,
            minimum_buffer_minutes=self._minimum_buffer_minutes,
            allow_back_to_back=self._allow_back_to_back,
        )
        if not result.has_conflict or not with_alternatives:
            return ConflictCheck(result=result)

        # Alternatives must clear everyone's calendar for the whole horizon.
        horizon_busy = self.busy_slots(people, start, start + timedelta(days=8), exclude_event_id=exclude_event_id)
        alternatives = generate_alternatives(
            start,
            end,
            horizon_busy,
            timezone_name,
            working_hours=self._directory.get_working_hours(people[0]) if people else None,
            now=self._clock(),
            minimum_buffer_minutes=self._minimum_buffer_minutes,
            allow_back_to_back=self._allow_back_to_back,
        )
        LOGGER.info(
            "Conflict found: severity=%s type=%s conflicts=%d alternatives=%d",
            result.severity.value if result.severity else None,
            result.conflict_type.value if result.conflict_type else None,
            len(result.conflicts),
            len(alternatives),
        )
        return ConflictCheck(result=result, alternatives=alternatives)

    def post_conflict_card(self, event: Event, check: ConflictCheck) -> str | None:
        """Post the conflict card once per event; returns the message id or None if already posted."""

        details = check.to_dict()
        created = self._db.create_conflict_log_if_absent(
            event.id,
            event.conversation_id,
            details["severity"] or "low",
            details,
        )
        if not created:
            LOGGER.info("Conflict card already posted for event %s", event.id[:8])
            return None
        text = templates.conflict_warning(event.title, check.result, check.alternatives, event.timezone)
        return self._db.add_message(
            event.conversation_id,
            ASSISTANT_SENDER_ID,
            text,
            role="assistant",
            meta={
                "type": "conflict",
                "event_id": event.id,
                "conflict_id": event.id,
                "severity": details["severity"],
                "alternatives": details["alternatives"],
            },
        )

    def select_alternative(self, event_id: str, index: int) -> RescheduleOutcome:
        """Move an event to its ``index``-th (1-based) suggested slot, at most once per choice."""

        event = self._db.get_event(event_id)
        if event is None:
            return RescheduleOutcome(success=False, error=f"event {event_id} not found")
        log = self._db.get_conflict_log(event_id)
        alternatives = log["details"].get("alternatives", []) if log else []
        if not 1 <= index <= len(alternatives):
            return RescheduleOutcome(success=False, event=event, error=f"no alternative {index} for this event")

        chosen = alternatives[index - 1]
        new_start = parse_utc_iso(chosen["start_time"])
        new_end = parse_utc_iso(chosen["end_time"])
        operation_id = f"{event_id}_{index}"
        recheck = self.check(
            new_start, new_end, event.participants, event.timezone, exclude_event_id=event.id, with_alternatives=False
        )
        if not self._db.apply_reschedule(
            operation_id, event_id, index, new_start, new_end, has_conflict=recheck.result.has_conflict
        ):
            LOGGER.info("Reschedule %s already applied", operation_id)
            return RescheduleOutcome(success=True, event=event, already_applied=True)

        self._db.add_message(
            event.conversation_id,
            ASSISTANT_SENDER_ID,
            templates.reschedule_confirmation(event.title, new_start, event.timezone),
            role="assistant",
            meta={"type": "reschedule", "event_id": event.id, "start_time": to_utc_iso(new_start)},
        )
        LOGGER.info("Rescheduled event %s to %s", event.id[:8], to_utc_iso(new_start))
        return RescheduleOutcome(success=True, event=self._db.get_event(event.id))

    def find_schedule_conflicts(self, user_id: str, days: int = MONITOR_HORIZON_DAYS) -> list[dict[str, Any]]:
        """Overlapping pairs among a user's upcoming events."""

        now = self._clock()
        horizon = now + timedelta(days=days)
        slots = self.busy_slots([user_id], now, horizon)
        upcoming = [slot for slot in slots if slot.end > now and slot.start < horizon]
        return [
            {
                "first_event_id": first.id,
                "second_event_id": second.id,
                "overlap_minutes": minutes,
            }
            for first, second, minutes in find_overlapping_pairs(upcoming)
        ]
