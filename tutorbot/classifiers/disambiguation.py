"""Single-call escalation for time expressions the parser cannot settle."""

from __future__ import annotations

import logging

from pydantic import BaseModel

from tutorbot.classifiers.prompts import DISAMBIGUATION_PROMPT
from tutorbot.llm.base import CompletionProvider
from tutorbot.timeparse import TimeCandidate
from tutorbot.timezones import validate_timezone

LOGGER = logging.getLogger(__name__)


class DisambiguationChoice(BaseModel):
    index: int
    reason: str = ""


class TimeDisambiguator:
    def __init__(self, llm: CompletionProvider, model: str | None = None) -> None:
        self._llm = llm
        self._model = model

    async def choose(self, text: str, candidates: list[TimeCandidate], timezone_name: str) -> TimeCandidate | None:
        """Return the candidate the model picks, or None if it cannot decide."""

        if not candidates:
            return None
        tz = validate_timezone(timezone_name)
        options = "\n".join(
            f"{index}. {candidate.start.astimezone(tz):%A %B %d %Y at %I:%M %p}"
            for index, candidate in enumerate(candidates)
        )
        try:
            completion = await self._llm.complete(
                DISAMBIGUATION_PROMPT.format(timezone=timezone_name, text=text[:500], options=options),
                DisambiguationChoice,
                model=self._model,
                temperature=0.0,
                max_tokens=60,
            )
        except Exception as exc:  # noqa: BLE001
            LOGGER.warning("Time disambiguation failed: %s", exc)
            return None

        index = completion.value.index
        if not 0 <= index < len(candidates):
            LOGGER.warning("Disambiguation index %d out of range (%d options)", index, len(candidates))
            return None
        LOGGER.info("Disambiguation picked option %d: %s", index, completion.value.reason[:80])
        return candidates[index]
