"""Tool names and strictly validated parameter models."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal

from pydantic import AfterValidator, BaseModel, BeforeValidator, ConfigDict, Field, model_validator

from tutorbot.models import TaskCategory
from tutorbot.timezones import is_valid_timezone, parse_utc_iso


class ToolName(str, Enum):
    """Closed set of side-effect operations the orchestrator may request."""

    TIME_PARSE = "time.parse"
    SCHEDULE_CREATE_EVENT = "schedule.create_event"
    SCHEDULE_CHECK_CONFLICTS = "schedule.check_conflicts"
    RSVP_CREATE_INVITE = "rsvp.create_invite"
    RSVP_RECORD_RESPONSE = "rsvp.record_response"
    TASK_CREATE = "task.create"
    REMINDERS_SCHEDULE = "reminders.schedule"
    MESSAGES_POST_SYSTEM = "messages.post_system"

    @property
    def wire_name(self) -> str:
        """Identifier safe for function-calling APIs that reject dots."""

        return self.value.replace(".", "_")

    @classmethod
    def from_wire(cls, name: str) -> ToolName:
        for member in cls:
            if name in (member.value, member.wire_name):
                return member
        raise ValueError(f"Unknown tool: {name}")


def _utc_timestamp(value: Any) -> datetime:
    if isinstance(value, datetime):
        if value.tzinfo is None:
            raise ValueError("timestamp must be timezone-aware")
        return value.astimezone(timezone.utc)
    if not isinstance(value, str):
        raise ValueError("timestamp must be an ISO-8601 UTC string ending in Z")
    return parse_utc_iso(value)


def _iana_timezone(value: str) -> str:
    if not is_valid_timezone(value):
        raise ValueError(f"{value!r} is not a valid IANA timezone")
    return value


UtcTimestamp = Annotated[datetime, BeforeValidator(_utc_timestamp)]
IanaTimezone = Annotated[str, AfterValidator(_iana_timezone)]
Identifier = Annotated[str, Field(min_length=1, max_length=128)]
Title = Annotated[str, Field(min_length=1, max_length=200)]


class ToolParams(BaseModel):
    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)


class TimeRangeParams(ToolParams):
    start_time: UtcTimestamp
    end_time: UtcTimestamp

    @model_validator(mode="after")
    def check_order(self) -> TimeRangeParams:
        if self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self


class TimeParseParams(ToolParams):
    text: str = Field(min_length=1, max_length=500)
    timezone: IanaTimezone
    reference_time: UtcTimestamp | None = None
    duration_minutes: int = Field(default=60, ge=5, le=480)


class CreateEventParams(TimeRangeParams):
    title: Title
    timezone: IanaTimezone
    participants: list[Identifier] = Field(min_length=1)
    conversation_id: Identifier
    created_by: Identifier


class CheckConflictsParams(TimeRangeParams):
    user_id: Identifier
    timezone: IanaTimezone


class CreateInviteParams(ToolParams):
    event_id: Identifier
    conversation_id: Identifier
    message: str | None = Field(default=None, max_length=1000)


class RecordResponseParams(ToolParams):
    event_id: Identifier
    user_id: Identifier
    response: Literal["accept", "decline"]
    conversation_id: Identifier


class CreateTaskParams(ToolParams):
    title: Title
    due_date: UtcTimestamp | None = None
    assignee: Identifier
    conversation_id: Identifier
    created_by: Identifier


class ScheduleReminderParams(ToolParams):
    entity_type: Literal["event", "task"]
    entity_id: Identifier
    target_user_id: Identifier
    reminder_type: Literal["24h", "2h", "due"]
    scheduled_for: UtcTimestamp


class PostSystemMessageParams(ToolParams):
    conversation_id: Identifier
    text: str = Field(min_length=1, max_length=4000)
    meta: dict[str, Any] | None = None


_TOOLS_BY_TASK: dict[TaskCategory, tuple[ToolName, ...]] = {
    TaskCategory.SCHEDULING: (
        ToolName.TIME_PARSE,
        ToolName.SCHEDULE_CHECK_CONFLICTS,
        ToolName.SCHEDULE_CREATE_EVENT,
        ToolName.RSVP_CREATE_INVITE,
        ToolName.REMINDERS_SCHEDULE,
        ToolName.MESSAGES_POST_SYSTEM,
    ),
    TaskCategory.RSVP: (ToolName.RSVP_RECORD_RESPONSE, ToolName.MESSAGES_POST_SYSTEM),
    TaskCategory.TASK: (ToolName.TASK_CREATE, ToolName.REMINDERS_SCHEDULE, ToolName.MESSAGES_POST_SYSTEM),
    TaskCategory.DEADLINE: (ToolName.TASK_CREATE, ToolName.REMINDERS_SCHEDULE, ToolName.MESSAGES_POST_SYSTEM),
    TaskCategory.REMINDER: (ToolName.REMINDERS_SCHEDULE, ToolName.MESSAGES_POST_SYSTEM),
}


def tools_for_task(task: TaskCategory) -> tuple[ToolName, ...]:
    """Tools exposed to the model for a gated category."""

    return _TOOLS_BY_TASK.get(task, (ToolName.MESSAGES_POST_SYSTEM,))
