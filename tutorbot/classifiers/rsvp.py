"""Interpret replies to session invitations."""

from __future__ import annotations

import logging
import re
import unicodedata
from dataclasses import dataclass

from pydantic import BaseModel, Field

from tutorbot.classifiers.prompts import RSVP_PROMPT
from tutorbot.llm.base import CompletionProvider
from tutorbot.models import RsvpResponse

LOGGER = logging.getLogger(__name__)

AUTO_RECORD_THRESHOLD = 0.7
AMBIGUOUS_CONFIDENCE_CAP = 0.6
QUICK_MATCH_CONFIDENCE = 0.9
MIN_REPLY_LENGTH = 3

_AMBIGUITY = [
    re.compile(pattern)
    for pattern in (
        r"\bmaybe\b",
        r"\bmight\b",
        r"\bshould work\b",
        r"\bprobably\b",
        r"\bthink so\b",
        r"\bnot sure\b",
        r"\blet me check\b",
        r"\bi'?ll see\b",
        r"\bpossibly\b",
        r"\b(?:yes|sure|sounds good),?\s+but\b",
        r"\bhowever\b",
        r"\bon second thought\b",
        r"\bactually\b.*\bnot\b",
    )
]
_ACCEPT = [
    re.compile(pattern)
    for pattern in (
        r"^(?:yes|yep|yup|yeah)\b",
        r"\bsure\b",
        r"\bsounds good\b",
        r"\bworks for me\b",
        r"\bthat works\b",
        r"\bi'?ll be there\b",
        r"\bcount me in\b",
        r"\bperfect\b",
        r"\bgreat\b(?!\s+but)",
        r"\b(?:we'?re|i'?m) coming\b",
    )
]
_DECLINE = [
    re.compile(pattern)
    for pattern in (
        r"^(?:no|nope|nah)\b",
        r"\b(?:can'?t|cannot) (?:make|do|come|attend)\b",
        r"\bsorry,? i'?m busy\b",
        r"\bwon'?t be able to\b",
        r"\bunable to\b",
        r"\bhave to (?:cancel|decline)\b",
    )
]


@dataclass(slots=True)
class RsvpInterpretation:
    response: RsvpResponse
    confidence: float
    should_auto_record: bool
    has_ambiguity: bool = False


class RsvpOutput(BaseModel):
    response: RsvpResponse = RsvpResponse.UNCLEAR
    confidence: float = Field(default=0.0)


def normalize_reply(text: str) -> str:
    normalized = unicodedata.normalize("NFKC", text).lower()
    normalized = normalized.replace("’", "'")
    return re.sub(r"\s+", " ", normalized).strip()


def has_ambiguity(text: str) -> bool:
    normalized = normalize_reply(text)
    return any(pattern.search(normalized) for pattern in _AMBIGUITY)


def quick_match(text: str) -> RsvpResponse | None:
    """Recognise unambiguous one-line replies without a model call."""

    normalized = normalize_reply(text)
    accepted = any(pattern.search(normalized) for pattern in _ACCEPT)
    declined = any(pattern.search(normalized) for pattern in _DECLINE)
    if accepted and not declined:
        return RsvpResponse.ACCEPT
    if declined and not accepted:
        return RsvpResponse.DECLINE
    return None


def should_auto_record(response: RsvpResponse, confidence: float, ambiguous: bool, text: str) -> bool:
    return (
        confidence >= AUTO_RECORD_THRESHOLD
        and not ambiguous
        and response is not RsvpResponse.UNCLEAR
        and len(normalize_reply(text)) >= MIN_REPLY_LENGTH
    )


class RsvpInterpreter:
    def __init__(self, llm: CompletionProvider, model: str | None = None) -> None:
        self._llm = llm
        self._model = model

    async def interpret(self, text: str) -> RsvpInterpretation:
        ambiguous = has_ambiguity(text)

        if not ambiguous:
            quick = quick_match(text)
            if quick is not None:
                auto = should_auto_record(quick, QUICK_MATCH_CONFIDENCE, ambiguous, text)
                LOGGER.info("RSVP quick match: response=%s auto_record=%s", quick.value, auto)
                return RsvpInterpretation(quick, QUICK_MATCH_CONFIDENCE, auto, has_ambiguity=False)

        try:
            completion = await self._llm.complete(
                RSVP_PROMPT.format(text=text[:500]),
                RsvpOutput,
                model=self._model,
                temperature=0.0,
                max_tokens=60,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("RSVP interpretation failed: %s", exc)
            return RsvpInterpretation(RsvpResponse.UNCLEAR, 0.0, False, has_ambiguity=ambiguous)

        output = completion.value
        confidence = max(0.0, min(1.0, output.confidence))
        if ambiguous:
            confidence = min(confidence, AMBIGUOUS_CONFIDENCE_CAP)
        auto = should_auto_record(output.response, confidence, ambiguous, text)
        LOGGER.info(
            "RSVP interpreted: response=%s confidence=%.2f ambiguous=%s auto_record=%s",
            output.response.value,
            confidence,
            ambiguous,
            auto,
        )
        return RsvpInterpretation(output.response, confidence, auto, has_ambiguity=ambiguous)
