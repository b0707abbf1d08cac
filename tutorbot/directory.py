"""Cached lookups of user profile fields."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable

from tutorbot.cache import TTLCache
from tutorbot.conflicts import WorkingHours
from tutorbot.db import Database
from tutorbot.timezones import is_valid_timezone

LOGGER = logging.getLogger(__name__)


class UserDirectory:
    """Reads timezone, working hours and push token per user through a TTL cache."""

    def __init__(
        self,
        db: Database,
        ttl_seconds: float = 600.0,
        default_timezone: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._default_timezone = default_timezone
        self._cache: TTLCache[dict[str, Any] | None] = TTLCache(ttl_seconds, clock=clock)

    def _profile(self, user_id: str) -> dict[str, Any] | None:
        marker = object()
        cached = self._cache.get(user_id, marker)
        if cached is not marker:
            return cached
        profile = self._db.get_user(user_id)
        self._cache.set(user_id, profile)
        return profile

    def get_timezone(self, user_id: str) -> str | None:
        """The user's IANA zone, else the configured default, else None."""

        profile = self._profile(user_id)
        zone = profile.get("timezone") if profile else None
        if zone and is_valid_timezone(zone):
            return zone
        if zone:
            LOGGER.warning("User %s has invalid timezone %r on profile", user_id[:8], zone)
        if self._default_timezone:
            LOGGER.info("Using configured default timezone for user %s", user_id[:8])
            return self._default_timezone
        return None

    def get_working_hours(self, user_id: str) -> WorkingHours:
        profile = self._profile(user_id)
        return WorkingHours.from_dict(profile.get("working_hours") if profile else None)

    def get_push_token(self, user_id: str) -> str | None:
        profile = self._profile(user_id)
        return profile.get("push_token") if profile else None

    def get_display_name(self, user_id: str) -> str:
        profile = self._profile(user_id)
        name = profile.get("display_name") if profile else None
        return name or f"User {user_id[:8]}"

    def invalidate(self, user_id: str) -> None:
        self._cache.pop(user_id)
