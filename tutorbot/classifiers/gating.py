"""First-pass gating classifier."""

from __future__ import annotations

import logging
import re
import time

from pydantic import BaseModel, Field, field_validator

from tutorbot.classifiers.prompts import GATING_PROMPT, GATING_SYSTEM
from tutorbot.classifiers.urgency import detect_urgency_keywords
from tutorbot.llm.base import CompletionProvider
from tutorbot.models import CATEGORY_PRIORITY, ClassificationResult, TaskCategory

LOGGER = logging.getLogger(__name__)

DEFAULT_CONFIDENCE_THRESHOLD = 0.6

# USD per million tokens (input, output).
_MODEL_PRICING: dict[str, tuple[float, float]] = {
    "openai/gpt-4o-mini": (0.15, 0.60),
    "openai/gpt-4o": (2.50, 10.00),
    "anthropic/claude-3-haiku": (0.25, 1.25),
}

_SESSION_WORDS = re.compile(r"\b(?:lesson|session|class|meeting|review|call|tutoring)s?\b")
_TIME_EXPRESSION = re.compile(
    r"\b\d{1,2}(?::\d{2})?\s*(?:am|pm|a\.m\.|p\.m\.)"
    r"|\b\d{1,2}:\d{2}\b"
    r"|\b(?:today|tonight|tomorrow|noon)\b"
    r"|\b(?:monday|tuesday|wednesday|thursday|friday|saturday|sunday)\b"
    r"|\b(?:jan|feb|mar|apr|may|jun|jul|aug|sep|sept|oct|nov|dec)[a-z]*\.?\s+\d{1,2}\b"
)
_DUE_WORDS = re.compile(r"\b(?:due|deadline|submit by|turn in|hand in)\b")


class GatingOutput(BaseModel):
    task: TaskCategory | None = TaskCategory.NONE
    confidence: float = Field(default=0.0)

    @field_validator("confidence")
    @classmethod
    def clamp_confidence(cls, value: float) -> float:
        return max(0.0, min(1.0, value))


def resolve_priority(categories: set[TaskCategory]) -> TaskCategory:
    """Pick the winning category for a mixed-intent message."""

    for category in CATEGORY_PRIORITY:
        if category in categories:
            return category
    return TaskCategory.NONE


def heuristic_gate(text: str) -> ClassificationResult | None:
    """Classify obvious messages without a model call.

    Returns None when the rules are inconclusive.
    """

    lowered = text.lower()
    matched: set[TaskCategory] = set()

    keywords = detect_urgency_keywords(text)
    if keywords.categories & {"explicit", "cancellation"} and not keywords.has_hedging:
        matched.add(TaskCategory.URGENT)
    has_session_time = bool(_SESSION_WORDS.search(lowered) and _TIME_EXPRESSION.search(lowered))
    if has_session_time:
        matched.add(TaskCategory.SCHEDULING)
    elif _DUE_WORDS.search(lowered):
        matched.add(TaskCategory.DEADLINE)

    if not matched:
        return None
    task = resolve_priority(matched)
    confidence = 0.9 if task is not TaskCategory.DEADLINE else 0.8
    return ClassificationResult(task=task, confidence=confidence, model_used="heuristic")


class GatingClassifier:
    """Decides whether a message warrants any automated processing.

    Never raises: provider failures degrade to ``task=none, confidence=0``.
    """

    def __init__(
        self,
        llm: CompletionProvider,
        model: str | None = None,
        use_heuristics: bool = True,
    ) -> None:
        self._llm = llm
        self._model = model
        self._use_heuristics = use_heuristics

    async def classify(self, text: str) -> ClassificationResult:
        started = time.monotonic()
        if self._use_heuristics:
            quick = heuristic_gate(text)
            if quick is not None:
                quick.processing_time_ms = _elapsed_ms(started)
                LOGGER.info("Gating heuristic: task=%s confidence=%.2f", quick.task.value, quick.confidence)
                return quick

        try:
            completion = await self._llm.complete(
                GATING_PROMPT.format(text=text[:2000]),
                GatingOutput,
                system=GATING_SYSTEM,
                model=self._model,
                temperature=0.0,
                max_tokens=50,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Gating classifier unavailable, skipping message: %s", exc)
            return ClassificationResult(
                task=TaskCategory.NONE,
                confidence=0.0,
                processing_time_ms=_elapsed_ms(started),
                model_used=self._model,
            )

        output = completion.value
        result = ClassificationResult(
            task=output.task or TaskCategory.NONE,
            confidence=output.confidence,
            processing_time_ms=_elapsed_ms(started),
            model_used=completion.model,
            input_tokens=completion.input_tokens,
            output_tokens=completion.output_tokens,
            cost_usd=estimate_cost(completion.model, completion.input_tokens, completion.output_tokens),
        )
        LOGGER.info(
            "Gating: task=%s confidence=%.2f model=%s tokens=%d/%d cost=$%.6f latency=%dms",
            result.task.value,
            result.confidence,
            result.model_used,
            result.input_tokens,
            result.output_tokens,
            result.cost_usd,
            result.processing_time_ms,
        )
        return result


def estimate_cost(model: str | None, input_tokens: int, output_tokens: int) -> float:
    input_rate, output_rate = _MODEL_PRICING.get(model or "", (0.0, 0.0))
    return (input_tokens * input_rate + output_tokens * output_rate) / 1_000_000


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)
