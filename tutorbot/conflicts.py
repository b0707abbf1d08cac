"""Conflict detection and alternative slot generation."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from enum import Enum
from typing import Any, Iterable, Sequence

from tutorbot.timezones import to_utc_iso, validate_timezone

DEFAULT_BUFFER_MINUTES = 15
DEFAULT_HORIZON_DAYS = 7
DEFAULT_MAX_ALTERNATIVES = 3


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return {"low": 1, "medium": 2, "high": 3}[self.value]


class ConflictType(str, Enum):
    OVERLAP = "overlap"
    BACK_TO_BACK = "back_to_back"
    INSUFFICIENT_BUFFER = "insufficient_buffer"


@dataclass(slots=True)
class BusySlot:
    """An existing commitment compared against a proposed time."""

    start: datetime
    end: datetime
    id: str | None = None
    title: str | None = None


@dataclass(slots=True)
class ConflictDetail:
    slot: BusySlot
    conflict_type: ConflictType
    severity: Severity
    gap_minutes: int = 0


@dataclass(slots=True)
class ConflictResult:
    has_conflict: bool
    severity: Severity | None = None
    conflict_type: ConflictType | None = None
    recommendation: str | None = None
    conflicts: list[ConflictDetail] = field(default_factory=list)


@dataclass(slots=True)
class WorkingHours:
    """Weekly availability window in the user's local time."""

    weekdays: frozenset[int] = frozenset({0, 1, 2, 3, 4})
    start: time = time(9, 0)
    end: time = time(17, 0)

    @classmethod
    def from_dict(cls, raw: dict[str, Any] | None) -> WorkingHours:
        """Build from a profile dict like {"days": [0, 1], "start": "09:00", "end": "17:00"}."""

        if not raw:
            return cls()
        default = cls()
        days = raw.get("days")
        return cls(
            weekdays=frozenset(int(day) for day in days) if days else default.weekdays,
            start=time.fromisoformat(raw["start"]) if raw.get("start") else default.start,
            end=time.fromisoformat(raw["end"]) if raw.get("end") else default.end,
        )


@dataclass(slots=True)
class AlternativeSlot:
    start: datetime
    end: datetime
    score: int
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "start_time": to_utc_iso(self.start),
            "end_time": to_utc_iso(self.end),
            "score": self.score,
            "reason": self.reason,
        }


_RECOMMENDATIONS = {
    ConflictType.OVERLAP: "Direct time conflict. Choose a completely different time slot.",
    ConflictType.BACK_TO_BACK: "Back-to-back sessions. Consider {buffer} minute buffer.",
    ConflictType.INSUFFICIENT_BUFFER: "Only {gap} min buffer. Recommend {buffer} min.",
}


def check_conflicts(
    proposed_start: datetime,
    proposed_end: datetime,
    existing: Iterable[BusySlot],
    minimum_buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
    allow_back_to_back: bool = False,
    travel_minutes: int = 0,
) -> ConflictResult:
    """Compare a proposed interval against existing commitments.

    Intervals are half-open. Per existing slot the first matching rule wins:
    overlap (high), shared boundary (medium, unless back-to-back is allowed),
    positive gap shorter than buffer plus travel (low). The result carries
    the highest severity found and that conflict's recommendation.
    """

    required_buffer = minimum_buffer_minutes + travel_minutes
    details: list[ConflictDetail] = []
    for slot in existing:
        detail = _classify(proposed_start, proposed_end, slot, required_buffer, allow_back_to_back)
        if detail is not None:
            details.append(detail)

    if not details:
        return ConflictResult(has_conflict=False)

    worst = max(details, key=lambda item: item.severity.rank)
    recommendation = _RECOMMENDATIONS[worst.conflict_type].format(
        buffer=required_buffer, gap=worst.gap_minutes
    )
    return ConflictResult(
        has_conflict=True,
        severity=worst.severity,
        conflict_type=worst.conflict_type,
        recommendation=recommendation,
        conflicts=details,
    )


def _classify(
    proposed_start: datetime,
    proposed_end: datetime,
    slot: BusySlot,
    required_buffer: int,
    allow_back_to_back: bool,
) -> ConflictDetail | None:
    if proposed_start < slot.end and slot.start < proposed_end:
        return ConflictDetail(slot, ConflictType.OVERLAP, Severity.HIGH)

    if proposed_start == slot.end or proposed_end == slot.start:
        if allow_back_to_back:
            return None
        return ConflictDetail(slot, ConflictType.BACK_TO_BACK, Severity.MEDIUM)

    gap_after = (proposed_start - slot.end).total_seconds() / 60
    gap_before = (slot.start - proposed_end).total_seconds() / 60
    gap = gap_after if gap_after > 0 else gap_before
    if 0 < gap < required_buffer:
        return ConflictDetail(slot, ConflictType.INSUFFICIENT_BUFFER, Severity.LOW, gap_minutes=int(gap))
    return None


def score_slot_hour(hour: int) -> int:
    """Preference score for a slot starting at a local hour."""

    score = 100
    if hour < 10:
        score -= 20
    if hour >= 16:
        score -= 30
    if 11 <= hour <= 14:
        score += 10
    return score


def score_reason(hour: int) -> str:
    if 11 <= hour <= 14:
        return "Midday slot"
    if hour < 10:
        return "Early morning slot"
    if hour >= 16:
        return "Late afternoon slot"
    return "Within working hours"


def generate_alternatives(
    proposed_start: datetime,
    proposed_end: datetime,
    existing: Sequence[BusySlot],
    timezone_name: str,
    working_hours: WorkingHours | None = None,
    now: datetime | None = None,
    horizon_days: int = DEFAULT_HORIZON_DAYS,
    max_results: int = DEFAULT_MAX_ALTERNATIVES,
    minimum_buffer_minutes: int = DEFAULT_BUFFER_MINUTES,
    allow_back_to_back: bool = False,
    step_minutes: int = 30,
) -> list[AlternativeSlot]:
    """Suggest replacement slots inside working hours, best first.

    Each day contributes its best-scoring conflict-free slot (earliest wins a
    tie), so the suggestions spread across days instead of clustering.
    """

    tz = validate_timezone(timezone_name)
    hours = working_hours or WorkingHours()
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    duration = proposed_end - proposed_start
    if duration <= timedelta(0):
        duration = timedelta(minutes=60)

    first_day = max(proposed_start, now).astimezone(tz).date()
    best_per_day: list[AlternativeSlot] = []
    for offset in range(horizon_days):
        day = first_day + timedelta(days=offset)
        if day.weekday() not in hours.weekdays:
            continue
        window_start = datetime.combine(day, hours.start, tzinfo=tz)
        window_end = datetime.combine(day, hours.end, tzinfo=tz)
        best: AlternativeSlot | None = None
        cursor = window_start
        while cursor + duration <= window_end:
            start = cursor.astimezone(timezone.utc)
            end = start + duration
            cursor += timedelta(minutes=step_minutes)
            if start < now:
                continue
            if start < proposed_end and proposed_start < end:
                continue
            clash = check_conflicts(start, end, existing, minimum_buffer_minutes, allow_back_to_back)
            if clash.has_conflict:
                continue
            local_hour = start.astimezone(tz).hour
            score = score_slot_hour(local_hour)
            if best is None or score > best.score:
                best = AlternativeSlot(start=start, end=end, score=score, reason=score_reason(local_hour))
        if best is not None:
            best_per_day.append(best)

    best_per_day.sort(key=lambda slot: (-slot.score, slot.start))
    return best_per_day[:max_results]


def find_overlapping_pairs(slots: Sequence[BusySlot]) -> list[tuple[BusySlot, BusySlot, int]]:
    """Every pair of overlapping slots with the overlap length in minutes."""

    ordered = sorted(slots, key=lambda slot: slot.start)
    pairs: list[tuple[BusySlot, BusySlot, int]] = []
    for index, first in enumerate(ordered):
        for second in ordered[index + 1 :]:
            if second.start >= first.end:
                break
            overlap = min(first.end, second.end) - second.start
            pairs.append((first, second, int(overlap.total_seconds() // 60)))
    return pairs
