"""Homework and deadline extraction."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timezone

from pydantic import BaseModel, Field

from tutorbot.classifiers.prompts import TASK_EXTRACTION_PROMPT
from tutorbot.llm.base import CompletionProvider
from tutorbot.timezones import parse_utc_iso, validate_timezone

LOGGER = logging.getLogger(__name__)

TASK_TYPES = ("homework", "test", "project", "reading", "other")

_VOCABULARIES: dict[str, tuple[str, ...]] = {
    "deadline": ("due by", "due on", "due", "deadline", "submit by", "turn in by"),
    "homework": ("homework", "assignment", "hw", "practice problems", "exercises", "worksheet"),
    "test": ("test", "exam", "quiz", "midterm", "final"),
    "project": ("project", "presentation", "paper", "essay", "report"),
    "reading": ("read", "reading assignment", "chapter", "chapters"),
}
_KEYWORD_PATTERN = re.compile(
    r"\b(?:" + "|".join(re.escape(word) for words in _VOCABULARIES.values() for word in words) + r")s?\b"
)


@dataclass(slots=True)
class TaskExtraction:
    found: bool
    title: str | None = None
    due_date: datetime | None = None
    task_type: str | None = None
    confidence: float = 0.0


class TaskExtractionOutput(BaseModel):
    found: bool = False
    title: str | None = None
    due_date: str | None = None
    task_type: str | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)


def has_task_keywords(text: str) -> bool:
    """Cheap pre-filter run before any model call."""

    return bool(_KEYWORD_PATTERN.search(text.lower()))


class TaskExtractor:
    def __init__(self, llm: CompletionProvider, model: str | None = None) -> None:
        self._llm = llm
        self._model = model

    async def extract(
        self,
        text: str,
        timezone_name: str = "UTC",
        reference: datetime | None = None,
    ) -> TaskExtraction:
        if not has_task_keywords(text):
            return TaskExtraction(found=False)

        tz = validate_timezone(timezone_name)
        today = (reference or datetime.now(timezone.utc)).astimezone(tz).date()
        try:
            completion = await self._llm.complete(
                TASK_EXTRACTION_PROMPT.format(today=today.isoformat(), timezone=timezone_name, text=text[:1000]),
                TaskExtractionOutput,
                model=self._model,
                temperature=0.0,
                max_tokens=200,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Task extraction failed: %s", exc)
            return TaskExtraction(found=False)

        output = completion.value
        title = (output.title or "").strip()[:200]
        if not output.found or not title:
            return TaskExtraction(found=False, confidence=output.confidence)

        due_date = None
        if output.due_date:
            due_date = _parse_due_date(output.due_date)
            if due_date is None:
                LOGGER.warning("Discarding unparseable due date %r for task %r", output.due_date, title[:40])

        task_type = output.task_type if output.task_type in TASK_TYPES else "other"
        LOGGER.info(
            "Task extracted: type=%s due=%s confidence=%.2f",
            task_type,
            due_date.isoformat() if due_date else None,
            output.confidence,
        )
        return TaskExtraction(
            found=True,
            title=title,
            due_date=due_date,
            task_type=task_type,
            confidence=output.confidence,
        )


def _parse_due_date(raw: str) -> datetime | None:
    try:
        return parse_utc_iso(raw)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(raw)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)
