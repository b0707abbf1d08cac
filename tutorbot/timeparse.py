"""Deterministic natural-language date/time extraction.

The primary path is a small regex grammar covering the phrasing people use
when booking sessions ("tomorrow at 3pm", "Friday 2-3pm", "March 15th at
10:30am"). Only when the grammar finds nothing and the text still looks
date-bearing do we fall back to ``dateparser.search.search_dates``.

Results are always UTC. The caller's IANA timezone is mandatory: wall-clock
components are interpreted in that zone (DST aware) and then converted.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from dateparser.search import search_dates

from tutorbot.timezones import validate_timezone

LOGGER = logging.getLogger(__name__)

PAST_DATE = "PAST_DATE"
NO_DATE_FOUND = "NO_DATE_FOUND"

DEFAULT_DURATION_MINUTES = 60
MAX_CANDIDATES = 3

# Wall-clock hour assumed when only a date or a part of day is given.
_IMPLIED_HOUR = 12
_PART_OF_DAY_HOURS = {"morning": 9, "afternoon": 14, "evening": 18, "night": 20}

_WEEKDAYS = {
    "monday": 0,
    "tuesday": 1,
    "tues": 1,
    "wednesday": 2,
    "weds": 2,
    "thursday": 3,
    "thurs": 3,
    "friday": 4,
    "saturday": 5,
    "sunday": 6,
}
_MONTHS = {
    "january": 1, "jan": 1,
    "february": 2, "feb": 2,
    "march": 3, "mar": 3,
    "april": 4, "apr": 4,
    "may": 5,
    "june": 6, "jun": 6,
    "july": 7, "jul": 7,
    "august": 8, "aug": 8,
    "september": 9, "sept": 9, "sep": 9,
    "october": 10, "oct": 10,
    "november": 11, "nov": 11,
    "december": 12, "dec": 12,
}
_SMALL_NUMBERS = {"a": 1, "an": 1, "one": 1, "two": 2, "three": 3, "four": 4, "five": 5}

_WEEKDAY_ALT = "|".join(sorted(_WEEKDAYS, key=len, reverse=True))
_MONTH_ALT = "|".join(sorted(_MONTHS, key=len, reverse=True))
_NUMBER_ALT = r"\d+|" + "|".join(_SMALL_NUMBERS)
_MERIDIEM = r"(?:am|pm|a\.m\.|p\.m\.)"

_DATE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    ("iso", re.compile(r"\b(?P<year>\d{4})-(?P<month>\d{1,2})-(?P<day>\d{1,2})\b")),
    ("slash", re.compile(r"\b(?P<month>\d{1,2})/(?P<day>\d{1,2})(?:/(?P<year>\d{2}|\d{4}))?\b")),
    (
        "month_day",
        re.compile(
            rf"\b(?P<month>{_MONTH_ALT})\.?\s+(?P<day>\d{{1,2}})(?:st|nd|rd|th)?\b(?:,?\s+(?P<year>\d{{4}})\b)?"
        ),
    ),
    (
        "day_month",
        re.compile(
            rf"\b(?P<day>\d{{1,2}})(?:st|nd|rd|th)?\s+(?:of\s+)?(?P<month>{_MONTH_ALT})\b(?:,?\s+(?P<year>\d{{4}})\b)?"
        ),
    ),
    ("relative_day", re.compile(r"\b(?P<rel>day after tomorrow|today|tonight|tomorrow|tmrw|tmr|yesterday)\b")),
    ("weekday", re.compile(rf"\b(?:(?P<mod>next|this|coming|last)\s+)?(?P<weekday>{_WEEKDAY_ALT})\b")),
    ("in_days", re.compile(rf"\bin\s+(?P<count>{_NUMBER_ALT})\s+(?P<unit>days?|weeks?)\b")),
]

_TIME_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (
        "range",
        re.compile(
            rf"\b(?:from\s+)?(?P<h1>\d{{1,2}})(?::(?P<m1>[0-5]\d))?\s*(?P<ap1>{_MERIDIEM})?\s*"
            rf"(?:-|–|to|until|till)\s*(?P<h2>\d{{1,2}})(?::(?P<m2>[0-5]\d))?\s*(?P<ap2>{_MERIDIEM})(?![a-z])"
        ),
    ),
    ("ampm", re.compile(rf"\b(?P<hour>\d{{1,2}})(?::(?P<minute>[0-5]\d))?\s*(?P<ap>{_MERIDIEM})(?![a-z])")),
    ("hhmm", re.compile(r"\b(?P<hour>\d{1,2}):(?P<minute>[0-5]\d)\b")),
    ("named", re.compile(r"\b(?P<word>noon|midday|midnight)\b")),
    ("at_hour", re.compile(r"(?:\bat|@)\s*(?P<hour>\d{1,2})\b(?!\s*(?:[:/.\-]\d|%|am\b|pm\b|a\.m|p\.m))")),
    ("part_of_day", re.compile(r"\b(?:in the\s+|this\s+)?(?P<part>morning|afternoon|evening|night)\b")),
]

_IN_DURATION = re.compile(rf"\bin\s+(?P<count>{_NUMBER_ALT}|half an)\s+(?P<unit>hours?|hrs?|minutes?|mins?)\b")

# Text between a date and a time that still binds them into one expression.
_JOINER = re.compile(r"^[\s,]*(?:at|on|@|by|from|around)?[\s,]*$")

# Gate for the dateparser fallback; plain chatter should not reach it.
_FALLBACK_HINT = re.compile(r"\d|\b(?:week|weekend|month|year|fortnight|noon|midnight)\b")
_EXPLICIT_TIME = re.compile(rf"\d{{1,2}}(?::\d{{2}})?\s*{_MERIDIEM}|\b\d{{1,2}}:\d{{2}}\b|\bnoon\b|\bmidnight\b")


@dataclass(slots=True)
class TimeCandidate:
    """One possible reading of a time expression, normalized to UTC."""

    start: datetime
    end: datetime
    text: str
    explicit_time: bool


@dataclass(slots=True)
class ParseResult:
    success: bool
    start: datetime | None = None
    end: datetime | None = None
    confidence: float = 0.0
    needs_disambiguation: bool = False
    candidates: list[TimeCandidate] = field(default_factory=list)
    error: str | None = None
    matched_text: str | None = None


@dataclass(slots=True)
class _DateMatch:
    start: int
    end: int
    text: str
    day: date


@dataclass(slots=True)
class _TimeMatch:
    start: int
    end: int
    text: str
    # (hour, minute) readings; two readings when the meridiem is unknown.
    readings: list[tuple[int, int]]
    explicit: bool
    end_clock: tuple[int, int] | None = None
    kind: str = ""


def parse(
    text: str,
    timezone_name: str | None,
    reference: datetime | None = None,
    duration_minutes: int = DEFAULT_DURATION_MINUTES,
) -> ParseResult:
    """Extract a start/end instant from free text.

    Raises:
        TimezoneError: if ``timezone_name`` is missing or not an IANA zone.
    """

    tz = validate_timezone(timezone_name)
    reference = (reference or datetime.now(timezone.utc)).astimezone(timezone.utc)
    local_ref = reference.astimezone(tz)
    duration = timedelta(minutes=duration_minutes)

    candidates = _grammar_candidates(text, tz, local_ref, duration)
    if not candidates and _FALLBACK_HINT.search(text.lower()):
        candidates = _fallback_candidates(text, tz, local_ref, duration)

    candidates = _dedupe(candidates)
    if not candidates:
        return ParseResult(success=False, error=NO_DATE_FOUND)

    today = local_ref.date()
    if all(c.start.astimezone(tz).date() < today for c in candidates):
        LOGGER.info("Rejected past date %r (reference=%s)", candidates[0].text, local_ref.date())
        return ParseResult(
            success=False,
            error=PAST_DATE,
            candidates=candidates[:MAX_CANDIDATES],
            matched_text=candidates[0].text,
        )
    candidates = [c for c in candidates if c.start.astimezone(tz).date() >= today]

    if len(candidates) == 1 and candidates[0].explicit_time:
        chosen = candidates[0]
        return ParseResult(
            success=True,
            start=chosen.start,
            end=chosen.end,
            confidence=1.0,
            candidates=[chosen],
            matched_text=chosen.text,
        )

    return ParseResult(
        success=False,
        confidence=0.5,
        needs_disambiguation=True,
        candidates=candidates[:MAX_CANDIDATES],
        matched_text=candidates[0].text,
    )


def _grammar_candidates(text: str, tz: ZoneInfo, local_ref: datetime, duration: timedelta) -> list[TimeCandidate]:
    lowered = text.lower()
    taken: list[tuple[int, int]] = []
    candidates: list[TimeCandidate] = []

    for match in _IN_DURATION.finditer(lowered):
        count = 0.5 if match.group("count") == "half an" else _to_number(match.group("count"))
        unit = match.group("unit")
        taken.append(match.span())
        try:
            delta = timedelta(hours=count) if unit.startswith(("hour", "hr")) else timedelta(minutes=count)
            start = (local_ref + delta).astimezone(timezone.utc)
            end = start + duration
        except OverflowError:
            continue
        candidates.append(TimeCandidate(start=start, end=end, text=match.group(0), explicit_time=True))

    dates = _find_dates(lowered, local_ref.date(), taken)
    times = _find_times(lowered, taken)

    used_dates: set[int] = set()
    for time_match in times:
        date_index = _adjacent_date(lowered, time_match, dates, used_dates)
        if date_index is None and time_match.kind == "part_of_day":
            continue
        if date_index is not None:
            used_dates.add(date_index)
            day = dates[date_index].day
            span_text = _span_text(text, time_match, dates[date_index])
            forward = False
        else:
            day = local_ref.date()
            span_text = text[time_match.start : time_match.end]
            forward = True
        for hour, minute in time_match.readings:
            candidates.append(
                _build_candidate(day, hour, minute, time_match, tz, local_ref, duration, span_text, forward)
            )

    for index, date_match in enumerate(dates):
        if index in used_dates:
            continue
        hour = 20 if date_match.text == "tonight" else _IMPLIED_HOUR
        start_local = datetime.combine(date_match.day, time(hour, 0), tzinfo=tz)
        start = start_local.astimezone(timezone.utc)
        candidates.append(
            TimeCandidate(start=start, end=start + duration, text=text[date_match.start : date_match.end], explicit_time=False)
        )

    return candidates


def _find_dates(lowered: str, today: date, taken: list[tuple[int, int]]) -> list[_DateMatch]:
    found: list[_DateMatch] = []
    for kind, pattern in _DATE_PATTERNS:
        for match in pattern.finditer(lowered):
            if _overlaps(match.span(), taken):
                continue
            day = _resolve_date(kind, match, today)
            if day is None:
                continue
            taken.append(match.span())
            found.append(_DateMatch(start=match.start(), end=match.end(), text=match.group(0), day=day))
    found.sort(key=lambda item: item.start)
    return found


def _resolve_date(kind: str, match: re.Match[str], today: date) -> date | None:
    try:
        if kind in {"iso", "slash", "month_day", "day_month"}:
            month_raw = match.group("month")
            month = int(month_raw) if month_raw.isdigit() else _MONTHS[month_raw]
            day = int(match.group("day"))
            year_raw = match.group("year")
            if year_raw:
                year = int(year_raw)
                if year < 100:
                    year += 2000
                return date(year, month, day)
            candidate = date(today.year, month, day)
            # A yearless date already behind us means next year's.
            if candidate < today:
                candidate = date(today.year + 1, month, day)
            return candidate
    except ValueError:
        return None

    if kind == "relative_day":
        offsets = {"today": 0, "tonight": 0, "tomorrow": 1, "tmrw": 1, "tmr": 1, "day after tomorrow": 2, "yesterday": -1}
        return today + timedelta(days=offsets[match.group("rel")])

    if kind == "weekday":
        target = _WEEKDAYS[match.group("weekday")]
        modifier = match.group("mod")
        ahead = (target - today.weekday()) % 7
        if modifier == "last":
            behind = (today.weekday() - target) % 7 or 7
            return today - timedelta(days=behind)
        if modifier == "next" and ahead == 0:
            ahead = 7
        return today + timedelta(days=ahead)

    if kind == "in_days":
        count = _to_number(match.group("count"))
        unit_days = 7 if match.group("unit").startswith("week") else 1
        try:
            return today + timedelta(days=count * unit_days)
        except OverflowError:
            return None

    return None


def _find_times(lowered: str, taken: list[tuple[int, int]]) -> list[_TimeMatch]:
    found: list[_TimeMatch] = []
    for kind, pattern in _TIME_PATTERNS:
        for match in pattern.finditer(lowered):
            if _overlaps(match.span(), taken):
                continue
            if kind == "part_of_day" and found:
                continue
            parsed = _resolve_time(kind, match)
            if parsed is None:
                continue
            parsed.kind = kind
            taken.append(match.span())
            found.append(parsed)
    found.sort(key=lambda item: item.start)
    return found


def _resolve_time(kind: str, match: re.Match[str]) -> _TimeMatch | None:
    start, end = match.span()
    text = match.group(0).strip()

    if kind == "range":
        ap2 = _meridiem(match.group("ap2"))
        ap1 = _meridiem(match.group("ap1")) or ap2
        h1, m1 = int(match.group("h1")), int(match.group("m1") or 0)
        h2, m2 = int(match.group("h2")), int(match.group("m2") or 0)
        if not (1 <= h1 <= 12 and 1 <= h2 <= 12):
            return None
        first = _to_24h(h1, ap1)
        second = _to_24h(h2, ap2)
        # "11-1pm" starts in the morning.
        if match.group("ap1") is None and (first, m1) >= (second, m2) and ap2 == "pm":
            first = _to_24h(h1, "am")
        return _TimeMatch(start, end, text, [(first, m1)], explicit=True, end_clock=(second, m2))

    if kind == "ampm":
        hour, minute = int(match.group("hour")), int(match.group("minute") or 0)
        if not 1 <= hour <= 12:
            return None
        return _TimeMatch(start, end, text, [(_to_24h(hour, _meridiem(match.group("ap"))), minute)], explicit=True)

    if kind == "hhmm":
        hour, minute = int(match.group("hour")), int(match.group("minute"))
        if hour > 23:
            return None
        if hour == 0 or hour >= 13 or match.group("hour").startswith("0"):
            return _TimeMatch(start, end, text, [(hour, minute)], explicit=True)
        return _TimeMatch(start, end, text, _both_meridiems(hour, minute), explicit=False)

    if kind == "named":
        hour = 0 if match.group("word") == "midnight" else 12
        return _TimeMatch(start, end, text, [(hour, 0)], explicit=True)

    if kind == "at_hour":
        hour = int(match.group("hour"))
        if hour > 23:
            return None
        if hour == 0 or hour >= 13:
            return _TimeMatch(start, end, text, [(hour, 0)], explicit=True)
        return _TimeMatch(start, end, text, _both_meridiems(hour, 0), explicit=False)

    if kind == "part_of_day":
        return _TimeMatch(start, end, text, [(_PART_OF_DAY_HOURS[match.group("part")], 0)], explicit=False)

    return None


def _adjacent_date(lowered: str, time_match: _TimeMatch, dates: list[_DateMatch], used: set[int]) -> int | None:
    best: tuple[int, int] | None = None
    for index, date_match in enumerate(dates):
        if index in used:
            continue
        if date_match.end <= time_match.start:
            gap = lowered[date_match.end : time_match.start]
        elif time_match.end <= date_match.start:
            gap = lowered[time_match.end : date_match.start]
        else:
            continue
        if _JOINER.match(gap) and (best is None or len(gap) < best[0]):
            best = (len(gap), index)
    return best[1] if best else None


def _build_candidate(
    day: date,
    hour: int,
    minute: int,
    time_match: _TimeMatch,
    tz: ZoneInfo,
    local_ref: datetime,
    duration: timedelta,
    span_text: str,
    forward: bool,
) -> TimeCandidate:
    start_local = datetime.combine(day, time(hour, minute), tzinfo=tz)
    # A bare clock time that already passed today means the next occurrence.
    if forward and start_local < local_ref:
        start_local = datetime.combine(day + timedelta(days=1), time(hour, minute), tzinfo=tz)
    if time_match.end_clock is not None:
        end_local = datetime.combine(start_local.date(), time(*time_match.end_clock), tzinfo=tz)
        if end_local <= start_local:
            end_local += timedelta(days=1)
        end = end_local.astimezone(timezone.utc)
    else:
        end = start_local.astimezone(timezone.utc) + duration
    return TimeCandidate(
        start=start_local.astimezone(timezone.utc),
        end=end,
        text=span_text,
        explicit_time=time_match.explicit,
    )


def _fallback_candidates(text: str, tz: ZoneInfo, local_ref: datetime, duration: timedelta) -> list[TimeCandidate]:
    settings = {
        "RELATIVE_BASE": local_ref.replace(tzinfo=None),
        "PREFER_DATES_FROM": "future",
        "RETURN_AS_TIMEZONE_AWARE": False,
    }
    try:
        found = search_dates(text, languages=["en"], settings=settings)
    except Exception:  # noqa: BLE001
        LOGGER.warning("dateparser fallback failed for %r", text[:80], exc_info=True)
        return []

    candidates: list[TimeCandidate] = []
    for matched, value in found or []:
        start_local = value.replace(tzinfo=tz) if value.tzinfo is None else value.astimezone(tz)
        start = start_local.astimezone(timezone.utc)
        candidates.append(
            TimeCandidate(
                start=start,
                end=start + duration,
                text=matched,
                explicit_time=bool(_EXPLICIT_TIME.search(matched.lower())),
            )
        )
    if candidates:
        LOGGER.info("dateparser fallback produced %d candidate(s)", len(candidates))
    return candidates


def _dedupe(candidates: list[TimeCandidate]) -> list[TimeCandidate]:
    seen: set[datetime] = set()
    unique: list[TimeCandidate] = []
    for candidate in candidates:
        if candidate.start in seen:
            continue
        seen.add(candidate.start)
        unique.append(candidate)
    return unique


def _span_text(text: str, time_match: _TimeMatch, date_match: _DateMatch) -> str:
    start = min(time_match.start, date_match.start)
    end = max(time_match.end, date_match.end)
    return text[start:end]


def _overlaps(span: tuple[int, int], taken: list[tuple[int, int]]) -> bool:
    return any(span[0] < other_end and other_start < span[1] for other_start, other_end in taken)


def _both_meridiems(hour: int, minute: int) -> list[tuple[int, int]]:
    # Afternoon first: sessions are far more often booked then.
    if hour == 12:
        return [(12, minute), (0, minute)]
    return [(hour + 12, minute), (hour, minute)]


def _meridiem(raw: str | None) -> str | None:
    if raw is None:
        return None
    return "am" if raw.startswith("a") else "pm"


def _to_24h(hour: int, meridiem: str | None) -> int:
    if meridiem == "am":
        return 0 if hour == 12 else hour
    if meridiem == "pm":
        return hour if hour == 12 else hour + 12
    return hour


def _to_number(raw: str) -> int:
    return int(raw) if raw.isdigit() else _SMALL_NUMBERS[raw]
