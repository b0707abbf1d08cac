"""Two-tier urgency classification: keywords first, model validation second."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from pydantic import BaseModel, Field

from tutorbot.classifiers.prompts import URGENCY_VALIDATION_PROMPT
from tutorbot.llm.base import CompletionProvider

LOGGER = logging.getLogger(__name__)

IS_URGENT_THRESHOLD = 0.7
SHOULD_NOTIFY_THRESHOLD = 0.85
# Keyword confidence at or above this is trusted without a model call.
SKIP_VALIDATION_THRESHOLD = 0.9
KEYWORD_WEIGHT = 0.6
MODEL_WEIGHT = 0.4

_KEYWORDS: dict[str, tuple[str, ...]] = {
    "explicit": ("urgent", "asap", "emergency", "immediately", "right now", "as soon as possible"),
    "cancellation": (
        "cancel session",
        "cancel appointment",
        "cancel class",
        "cancel lesson",
        "cancel meeting",
        "need to cancel",
        "have to cancel",
        "cannot make it",
        "can't make it today",
        "won't be able to make",
    ),
    "reschedule": (
        "need to reschedule",
        "have to reschedule",
        "need to move",
        "have to move",
        "change time",
        "change the time",
        "change date",
        "different time",
        "running late",
    ),
    "deadline": (
        "test tomorrow",
        "exam tomorrow",
        "test today",
        "exam today",
        "quiz in",
        "test in",
        "exam in",
        "due today",
        "due tomorrow",
    ),
}

# (plain, hedged) confidence per category.
_CATEGORY_CONFIDENCE: dict[str, tuple[float, float]] = {
    "explicit": (0.95, 0.75),
    "cancellation": (0.9, 0.7),
    "reschedule": (0.85, 0.65),
    "deadline": (0.7, 0.5),
}

_HEDGING = ("maybe", "might", "possibly", "perhaps", "if possible", "when you can", "no rush", "whenever")

_PATTERNS = {
    category: [re.compile(rf"\b{re.escape(phrase)}\b") for phrase in phrases]
    for category, phrases in _KEYWORDS.items()
}
_HEDGING_PATTERNS = [re.compile(rf"\b{re.escape(phrase)}\b") for phrase in _HEDGING]


@dataclass(slots=True)
class KeywordMatch:
    matched: list[str] = field(default_factory=list)
    categories: set[str] = field(default_factory=set)
    has_hedging: bool = False
    confidence: float = 0.0


@dataclass(slots=True)
class UrgencyResult:
    is_urgent: bool
    should_notify: bool
    confidence: float
    category: str | None = None
    keywords: list[str] = field(default_factory=list)
    reason: str = ""
    validated_by_model: bool = False


class UrgencyValidation(BaseModel):
    is_urgent: bool = False
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reason: str = ""


def detect_urgency_keywords(text: str) -> KeywordMatch:
    """Match the urgency vocabularies; hedging lowers the confidence."""

    lowered = _normalize_apostrophes(text.lower())
    result = KeywordMatch()
    for category, patterns in _PATTERNS.items():
        for phrase, pattern in zip(_KEYWORDS[category], patterns):
            if pattern.search(lowered):
                result.matched.append(phrase)
                result.categories.add(category)
    if not result.categories:
        return result

    result.has_hedging = any(pattern.search(lowered) for pattern in _HEDGING_PATTERNS)
    column = 1 if result.has_hedging else 0
    result.confidence = max(_CATEGORY_CONFIDENCE[category][column] for category in result.categories)
    return result


def primary_category(categories: set[str]) -> str | None:
    for category in _CATEGORY_CONFIDENCE:
        if category in categories:
            return category
    return None


class UrgencyClassifier:
    """High-precision urgency detection.

    A message with no urgency keywords never reaches the model. Keyword
    confidence below the trust threshold is checked by one model call and
    blended 0.6/0.4 with the model's score.
    """

    def __init__(self, llm: CompletionProvider, model: str | None = None) -> None:
        self._llm = llm
        self._model = model

    async def classify(self, text: str) -> UrgencyResult:
        keywords = detect_urgency_keywords(text)
        category = primary_category(keywords.categories)
        if not keywords.categories:
            return UrgencyResult(is_urgent=False, should_notify=False, confidence=0.0, reason="no urgency keywords")

        keyword_result = UrgencyResult(
            is_urgent=keywords.confidence >= IS_URGENT_THRESHOLD,
            should_notify=keywords.confidence >= SHOULD_NOTIFY_THRESHOLD,
            confidence=keywords.confidence,
            category=category,
            keywords=list(keywords.matched),
            reason=f"matched {', '.join(keywords.matched)}",
        )
        if keywords.confidence >= SKIP_VALIDATION_THRESHOLD:
            LOGGER.info("Urgency from keywords: confidence=%.2f category=%s", keywords.confidence, category)
            return keyword_result

        try:
            completion = await self._llm.complete(
                URGENCY_VALIDATION_PROMPT.format(categories=", ".join(sorted(keywords.categories)), text=text[:1000]),
                UrgencyValidation,
                model=self._model,
                temperature=0.0,
                max_tokens=120,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Urgency validation failed, keeping keyword result without push: %s", exc)
            keyword_result.should_notify = False
            return keyword_result

        validation = completion.value
        combined = KEYWORD_WEIGHT * keywords.confidence + MODEL_WEIGHT * validation.confidence
        result = UrgencyResult(
            is_urgent=validation.is_urgent and combined >= IS_URGENT_THRESHOLD,
            should_notify=(
                keywords.confidence >= SHOULD_NOTIFY_THRESHOLD
                and validation.is_urgent
                and combined >= SHOULD_NOTIFY_THRESHOLD
            ),
            confidence=round(combined, 4),
            category=category,
            keywords=list(keywords.matched),
            reason=validation.reason or keyword_result.reason,
            validated_by_model=True,
        )
        LOGGER.info(
            "Urgency validated: keyword=%.2f model=%.2f combined=%.2f notify=%s",
            keywords.confidence,
            validation.confidence,
            combined,
            result.should_notify,
        )
        return result


def _normalize_apostrophes(text: str) -> str:
    return text.replace("’", "'").replace("‘", "'")
