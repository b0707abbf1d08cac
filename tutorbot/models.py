"""Core domain models used across layers."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

# Sender id on every message the assistant posts.
ASSISTANT_SENDER_ID = "assistant"


class TaskCategory(str, Enum):
    """Closed set of intents the gating classifier can assign."""

    SCHEDULING = "scheduling"
    RSVP = "rsvp"
    TASK = "task"
    URGENT = "urgent"
    DEADLINE = "deadline"
    REMINDER = "reminder"
    NONE = "none"


# Mixed-intent messages resolve to the first matching category in this order.
CATEGORY_PRIORITY: tuple[TaskCategory, ...] = (
    TaskCategory.URGENT,
    TaskCategory.SCHEDULING,
    TaskCategory.DEADLINE,
    TaskCategory.RSVP,
    TaskCategory.REMINDER,
    TaskCategory.TASK,
    TaskCategory.NONE,
)


class EventStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    DECLINED = "declined"


class RsvpResponse(str, Enum):
    ACCEPT = "accept"
    DECLINE = "decline"
    UNCLEAR = "unclear"


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


@dataclass(slots=True)
class Message:
    """Chat utterance read from the conversation store."""

    id: str
    conversation_id: str
    sender_id: str
    text: str
    created_at: datetime
    sender_name: str | None = None


@dataclass(slots=True)
class LLMToolCall:
    """Tool invocation returned by an LLM provider."""

    name: str
    arguments: dict[str, Any]
    call_id: str | None = None


@dataclass(slots=True)
class LLMResponse:
    """Result from an LLM generation request."""

    content: str
    tool_calls: list[LLMToolCall] = field(default_factory=list)
    raw: dict[str, Any] | None = None
    model: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


@dataclass(slots=True)
class ClassificationResult:
    """Gating decision with model and cost metadata. Logged, never stored."""

    task: TaskCategory
    confidence: float
    processing_time_ms: int = 0
    model_used: str | None = None
    input_tokens: int = 0
    output_tokens: int = 0
    cost_usd: float = 0.0

    def should_process(self, threshold: float) -> bool:
        return self.task is not TaskCategory.NONE and self.confidence >= threshold


@dataclass(slots=True)
class RsvpEntry:
    response: RsvpResponse
    responded_at: datetime


@dataclass(slots=True)
class Event:
    """A scheduled session between conversation participants."""

    id: str
    conversation_id: str
    title: str
    start_time: datetime
    end_time: datetime
    timezone: str
    participants: list[str]
    created_by: str
    idempotency_key: str
    status: EventStatus = EventStatus.PENDING
    rsvps: dict[str, RsvpEntry] = field(default_factory=dict)
    has_conflict: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class Deadline:
    """A task with an optional due instant."""

    id: str
    conversation_id: str
    title: str
    assignee: str
    created_by: str
    idempotency_key: str
    due_date: datetime | None = None
    completed: bool = False
    created_at: datetime | None = None


@dataclass(slots=True)
class OutboxEntry:
    """One reminder or alert awaiting delivery to one user."""

    id: str
    entity_type: str
    entity_id: str
    target_user_id: str
    reminder_type: str
    title: str
    body: str
    data: dict[str, Any]
    scheduled_for: datetime
    push_token: str | None = None
    status: OutboxStatus = OutboxStatus.PENDING
    attempts: int = 0
    last_error: str | None = None
    sent_at: datetime | None = None
    created_at: datetime | None = None


@dataclass(slots=True)
class FailedOperation:
    """Audit record for a tool call that exhausted its retries."""

    tool_name: str
    params: dict[str, Any]
    error: str
    attempts: int
    timestamp: datetime
    user_id: str
    conversation_id: str | None = None
    correlation_id: str | None = None
    id: int | None = None


@dataclass(slots=True)
class ToolExecutionResult:
    """Outcome of one executor invocation. Never raised, always returned."""

    success: bool
    data: dict[str, Any] | None = None
    error: str | None = None
    attempts: int = 0
    execution_time_ms: int = 0
    deduplicated: bool = False

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"success": self.success, "attempts": self.attempts}
        if self.success:
            payload["data"] = self.data or {}
        else:
            payload["error"] = self.error
        if self.deduplicated:
            payload["deduplicated"] = True
        return payload
