"""Data models for resolved replies and pending watches."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..timeutils import format_relative
from ..transcripts import TranscriptEntry


@dataclass(slots=True, frozen=True)
class ResolvedReply:
    """The assistant's reply text for one prompt."""

    text: str
    timestamp: str
    display_timestamp: str
    source_entry_id: str

    @classmethod
    def from_entry(cls, entry: TranscriptEntry, now: datetime | None = None) -> "ResolvedReply":
        timestamp = entry.timestamp or (now or datetime.now().astimezone()).isoformat()
        return cls(
            text=entry.text,
            timestamp=timestamp,
            display_timestamp=format_relative(timestamp, now),
            source_entry_id=entry.id,
        )

    def as_dict(self) -> dict[str, Any]:
        return {
            "text": self.text,
            "timestamp": self.timestamp,
            "display_timestamp": self.display_timestamp,
            "source_entry_id": self.source_entry_id,
        }


ReplyCallback = Callable[[str, ResolvedReply], None]


class WatchState(str, Enum):
    PENDING = "pending"
    RETRYING = "retrying"
    RESOLVED = "resolved"
    EXHAUSTED = "exhausted"
    STALE = "stale"


@dataclass(slots=True)
class PendingWatch:
    """Bookkeeping for a prompt whose reply has not been written yet."""

    prompt_id: str
    transcript_path: Path
    prompt_text: str
    timestamp_hint: str | None
    matched_user_entry_id: str | None
    callback: ReplyCallback
    last_attempt_at: float
    backoff_interval: float
    max_attempts: int
    attempts: int = 0
    state: WatchState = WatchState.PENDING
    created_at: float = 0.0

    @property
    def next_due(self) -> float:
        return self.last_attempt_at + self.backoff_interval

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


__all__ = ["PendingWatch", "ReplyCallback", "ResolvedReply", "WatchState"]
