"""Prompt records parsed from the activity log."""

from __future__ import annotations

from datetime import datetime
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

from ..timeutils import format_relative

UNKNOWN_SESSION = "unknown"
FINGERPRINT_PROMPT_CHARS = 100


def prompt_fingerprint(session_id: str, timestamp: str, prompt_text: str) -> str:
    """Build the dedup key for one prompt submission."""

    return f"{session_id}|{timestamp}|{prompt_text[:FINGERPRINT_PROMPT_CHARS]}"


class PromptRecord(BaseModel):
    """One user submission observed in the activity log."""

    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(..., description="Origin-reported submission time.")
    prompt_text: str = Field(..., description="The submitted text, trimmed.")
    session_id: str = Field(default=UNKNOWN_SESSION, description="Origin session identifier.")
    transcript_path: Path | None = Field(
        default=None,
        description="Transcript expected to contain the eventual reply.",
    )

    @field_validator("prompt_text")
    @classmethod
    def _normalize_prompt(cls, value: str) -> str:
        normalized = value.strip()
        if not normalized:
            raise ValueError("Prompt text must not be empty")
        return normalized

    @field_validator("session_id", mode="before")
    @classmethod
    def _default_session(cls, value):  # type: ignore[override]
        if not isinstance(value, str) or not value.strip():
            return UNKNOWN_SESSION
        return value.strip()

    @field_validator("transcript_path", mode="before")
    @classmethod
    def _empty_path_is_none(cls, value):  # type: ignore[override]
        if value is None or (isinstance(value, str) and not value.strip()):
            return None
        return value

    @property
    def fingerprint(self) -> str:
        return prompt_fingerprint(self.session_id, self.timestamp, self.prompt_text)

    def display_time(self, now: datetime | None = None) -> str:
        return format_relative(self.timestamp, now)


__all__ = ["FINGERPRINT_PROMPT_CHARS", "PromptRecord", "UNKNOWN_SESSION", "prompt_fingerprint"]
