"""Configuration management for buddy-replies."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_PROMPT_LOG = Path("~/.claude/hook-logs/user-prompts-log.txt")


class BuddySettings(BaseSettings):
    """Runtime configuration sourced from environment variables and optional .env file."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    prompt_log_path: Path = Field(default=DEFAULT_PROMPT_LOG, validation_alias="BUDDY_PROMPT_LOG_PATH")
    log_level: str = Field(default="INFO", validation_alias="BUDDY_LOG_LEVEL")
    transcript_cache_ttl: float = Field(default=30.0, validation_alias="BUDDY_TRANSCRIPT_CACHE_TTL")
    transcript_cache_size: int = Field(default=10, validation_alias="BUDDY_TRANSCRIPT_CACHE_SIZE")
    resolve_timeout: float = Field(default=5.0, validation_alias="BUDDY_RESOLVE_TIMEOUT")
    max_attempts: int = Field(default=8, validation_alias="BUDDY_MAX_ATTEMPTS")
    initial_backoff: float = Field(default=1.0, validation_alias="BUDDY_INITIAL_BACKOFF")
    max_backoff: float = Field(default=60.0, validation_alias="BUDDY_MAX_BACKOFF")
    stale_after: float = Field(default=300.0, validation_alias="BUDDY_STALE_AFTER")
    sweep_interval: float = Field(default=30.0, validation_alias="BUDDY_SWEEP_INTERVAL")
    debounce_interval: float = Field(default=0.5, validation_alias="BUDDY_DEBOUNCE_INTERVAL")
    recent_prompt_limit: int = Field(default=3, validation_alias="BUDDY_RECENT_PROMPT_LIMIT")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        normalized = value.strip().upper()
        if normalized not in {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}:
            raise ValueError(
                "BUDDY_LOG_LEVEL must be one of CRITICAL, ERROR, WARNING, INFO, DEBUG"
            )
        return normalized

    @field_validator(
        "transcript_cache_ttl",
        "resolve_timeout",
        "initial_backoff",
        "max_backoff",
        "stale_after",
        "sweep_interval",
        "debounce_interval",
    )
    @classmethod
    def _validate_positive_interval(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("intervals and timeouts must be > 0 seconds")
        return value

    @field_validator("transcript_cache_size", "max_attempts", "recent_prompt_limit")
    @classmethod
    def _validate_count(cls, value: int) -> int:
        if value < 1:
            raise ValueError("counts must be >= 1")
        return value


@lru_cache(maxsize=1)
def get_settings() -> BuddySettings:
    """Return cached settings instance."""

    settings = BuddySettings()
    settings.prompt_log_path = settings.prompt_log_path.expanduser().resolve()
    return settings


__all__ = ["BuddySettings", "DEFAULT_PROMPT_LOG", "get_settings"]
