"""Deterministic idempotency keys for user-visible side effects."""

from __future__ import annotations

import re
from datetime import datetime, timezone

_NON_WORD = re.compile(r"[^a-z0-9]+")


def normalize_title(title: str) -> str:
    """Lowercase, punctuation-insensitive form of a title: "Math  Lesson!" -> "math-lesson"."""

    return _NON_WORD.sub("-", title.lower()).strip("-")


def event_key(conversation_id: str, title: str, start: datetime) -> str:
    day = start.astimezone(timezone.utc).date().isoformat()
    return f"event:{conversation_id}:{normalize_title(title)}:{day}"


def deadline_key(conversation_id: str, title: str, due: datetime | None) -> str:
    day = due.astimezone(timezone.utc).date().isoformat() if due else "undated"
    return f"task:{conversation_id}:{normalize_title(title)}:{day}"


def outbox_key(entity_type: str, entity_id: str, target_user_id: str, reminder_type: str) -> str:
    return f"{entity_type}_{entity_id}_{target_user_id}_{reminder_type}"
