"""IANA timezone validation and UTC helpers."""

from __future__ import annotations

from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from tutorbot.errors import TimezoneError

TIMEZONE_REQUIRED = "TIMEZONE_REQUIRED"
INVALID_TIMEZONE = "INVALID_TIMEZONE"


def validate_timezone(name: str | None) -> ZoneInfo:
    """Return the zone for an IANA name, raising TimezoneError otherwise."""

    if name is not None and not isinstance(name, str):
        raise TimezoneError(INVALID_TIMEZONE, f"{name!r} is not a valid IANA timezone")
    if not name or not name.strip():
        raise TimezoneError(TIMEZONE_REQUIRED, "a timezone is required")
    # ZoneInfo accepts filesystem-looking keys; reject those before lookup.
    if name.startswith("/") or ".." in name:
        raise TimezoneError(INVALID_TIMEZONE, f"{name!r} is not a valid IANA timezone")
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise TimezoneError(INVALID_TIMEZONE, f"{name!r} is not a valid IANA timezone") from exc


def is_valid_timezone(name: str | None) -> bool:
    try:
        validate_timezone(name)
    except TimezoneError:
        return False
    return True


def to_utc_iso(value: datetime) -> str:
    """Format an aware datetime as ISO-8601 UTC with a trailing Z."""

    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def parse_utc_iso(value: str) -> datetime:
    """Parse an ISO-8601 UTC string that must end in Z."""

    if not value.endswith("Z"):
        raise ValueError(f"{value!r} must be an ISO-8601 UTC timestamp ending in Z")
    parsed = datetime.fromisoformat(value[:-1] + "+00:00")
    return parsed.astimezone(timezone.utc)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
