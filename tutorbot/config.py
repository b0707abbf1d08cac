"""Application configuration."""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Environment-driven settings validated at startup."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    openrouter_api_key: str = Field(..., alias="OPENROUTER_API_KEY")
    openrouter_base_url: str = Field(
        default="https://openrouter.ai/api/v1",
        alias="OPENROUTER_BASE_URL",
    )
    # Cheap model for gating, urgency validation, RSVP and task extraction.
    gating_model: str = Field(default="openai/gpt-4o-mini", alias="GATING_MODEL")
    orchestrator_model: str = Field(default="openai/gpt-4o", alias="ORCHESTRATOR_MODEL")
    database_path: Path = Field(default=Path("tutorbot.db"), alias="DATABASE_PATH")
    request_timeout_seconds: float = Field(default=30.0, alias="REQUEST_TIMEOUT_SECONDS")

    expo_push_url: str = Field(default="https://exp.host/--/api/v2/push/send", alias="EXPO_PUSH_URL")
    expo_access_token: str | None = Field(default=None, alias="EXPO_ACCESS_TOKEN")

    gating_confidence_threshold: float = Field(default=0.6, alias="GATING_CONFIDENCE_THRESHOLD")
    minimum_buffer_minutes: int = Field(default=15, alias="MINIMUM_BUFFER_MINUTES")
    allow_back_to_back: bool = Field(default=False, alias="ALLOW_BACK_TO_BACK")
    # Used only when a sender has no timezone on their profile; unset means scheduling is skipped.
    default_timezone: str | None = Field(default=None, alias="DEFAULT_TIMEZONE")

    reminder_interval_seconds: float = Field(default=3600.0, alias="REMINDER_INTERVAL_SECONDS")
    outbox_poll_interval_seconds: float = Field(default=5.0, alias="OUTBOX_POLL_INTERVAL_SECONDS")
    message_poll_interval_seconds: float = Field(default=2.0, alias="MESSAGE_POLL_INTERVAL_SECONDS")
    write_guard_ttl_seconds: float = Field(default=600.0, alias="WRITE_GUARD_TTL_SECONDS")
    user_cache_ttl_seconds: float = Field(default=600.0, alias="USER_CACHE_TTL_SECONDS")

    # Comma-separated user ids allowed to send operator commands.
    admin_user_ids: str = Field(default="", alias="ADMIN_USER_IDS")

    use_fast_path_scheduling: bool = Field(default=True, alias="USE_FAST_PATH_SCHEDULING")
    use_fast_path_gating: bool = Field(default=True, alias="USE_FAST_PATH_GATING")
    skip_rag_for_scheduling: bool = Field(default=True, alias="SKIP_RAG_FOR_SCHEDULING")


def load_settings() -> Settings:
    """Load and validate settings."""

    return Settings()


def admin_users(settings: Settings) -> frozenset[str]:
    """Return the set of user ids permitted to send operator commands."""

    return frozenset(uid.strip() for uid in settings.admin_user_ids.split(",") if uid.strip())
