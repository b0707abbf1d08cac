"""Time parsing tool."""

from __future__ import annotations

from typing import Any

from tutorbot import timeparse
from tutorbot.timezones import to_utc_iso
from tutorbot.tools.base import ExecutionContext, Tool
from tutorbot.tools.schemas import TimeParseParams, ToolName


class TimeParseTool(Tool):
    """Resolves a natural-language time phrase to UTC instants."""

    name = ToolName.TIME_PARSE
    description = (
        "Parse a natural-language date/time phrase in the user's IANA timezone. "
        "Returns UTC start/end, or candidates when the phrase is ambiguous."
    )
    params_model = TimeParseParams
    requires_timezone = True

    async def run(self, params: TimeParseParams, context: ExecutionContext) -> dict[str, Any]:
        result = timeparse.parse(
            params.text,
            params.timezone,
            reference=params.reference_time,
            duration_minutes=params.duration_minutes,
        )
        return {
            "parsed": result.success,
            "start_time": to_utc_iso(result.start) if result.start else None,
            "end_time": to_utc_iso(result.end) if result.end else None,
            "confidence": result.confidence,
            "needs_disambiguation": result.needs_disambiguation,
            "candidates": [
                {"start_time": to_utc_iso(c.start), "end_time": to_utc_iso(c.end), "text": c.text}
                for c in result.candidates
            ],
            "error": result.error,
            "matched_text": result.matched_text,
        }
