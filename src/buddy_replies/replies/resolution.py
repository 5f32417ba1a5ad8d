"""Turn a parsed transcript into a reply for one prompt."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from ..transcripts import TranscriptEntry, find_user_entry, walk_chain
from .models import ResolvedReply


@dataclass(slots=True)
class ResolutionResult:
    user_entry_id: str | None
    reply: ResolvedReply | None


def resolve_from_entries(
    entries: Sequence[TranscriptEntry],
    prompt_text: str,
    *,
    timestamp_hint: str | None = None,
    user_entry_id: str | None = None,
    now: datetime | None = None,
) -> ResolutionResult:
    """Match the user entry (unless already known) and walk to its reply."""

    if user_entry_id is None:
        user_entry = find_user_entry(entries, prompt_text, timestamp_hint)
        if user_entry is None:
            return ResolutionResult(user_entry_id=None, reply=None)
        user_entry_id = user_entry.id

    found = walk_chain(entries, user_entry_id)
    if not found:
        return ResolutionResult(user_entry_id=user_entry_id, reply=None)
    return ResolutionResult(
        user_entry_id=user_entry_id,
        reply=ResolvedReply.from_entry(found[-1], now),
    )


__all__ = ["ResolutionResult", "resolve_from_entries"]
