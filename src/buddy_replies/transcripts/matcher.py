"""Locate the transcript record holding a user's own prompt submission."""

from __future__ import annotations

import re
from datetime import datetime, timedelta
from typing import Iterable

from ..timeutils import parse_timestamp, sort_key
from .models import TranscriptEntry

SNIPPET_LENGTH = 50
HINT_GRACE = timedelta(seconds=60)

_WHITESPACE = re.compile(r"\s+")


def normalize_text(value: str) -> str:
    """Lowercase and collapse runs of whitespace."""

    return _WHITESPACE.sub(" ", value).strip().lower()


def prompt_matches(candidate: str, prompt: str) -> bool:
    """Layered containment check between a recorded user message and a prompt.

    Transcripts may hold the prompt verbatim, truncated, or with formatting
    differences, so any of these is accepted: the candidate contains the first
    50 characters of the prompt, the candidate contains the prompt, the prompt
    contains the candidate, or either contains the other after normalization.
    Short generic prompts ("ok", "thanks") can therefore match loosely.
    """

    prompt = prompt.strip()
    if not prompt or not candidate.strip():
        return False

    if prompt[:SNIPPET_LENGTH] in candidate:
        return True
    if prompt in candidate or candidate in prompt:
        return True

    normalized_candidate = normalize_text(candidate)
    normalized_prompt = normalize_text(prompt)
    return normalized_prompt in normalized_candidate or normalized_candidate in normalized_prompt


def find_user_entry(
    entries: Iterable[TranscriptEntry],
    prompt_text: str,
    timestamp_hint: str | None = None,
) -> TranscriptEntry | None:
    """Return the most recent user entry whose text matches ``prompt_text``.

    When ``timestamp_hint`` (the prompt's logged submission time) is given,
    matches written more than ``HINT_GRACE`` after it belong to a later
    resubmission and are skipped, unless that would leave no match at all.
    Ties on timestamp go to the later record in the file.
    """

    matches = [
        entry
        for entry in entries
        if entry.role == "user"
        and entry.plain_text is not None
        and prompt_matches(entry.plain_text, prompt_text)
    ]
    if not matches:
        return None

    hint = parse_timestamp(timestamp_hint)
    if hint is not None:
        bounded = [entry for entry in matches if not _written_after(entry, hint)]
        matches = bounded or matches

    best = matches[0]
    for entry in matches[1:]:
        if sort_key(entry.timestamp) >= sort_key(best.timestamp):
            best = entry
    return best


def _written_after(entry: TranscriptEntry, hint: datetime) -> bool:
    written = parse_timestamp(entry.timestamp)
    return written is not None and written - hint > HINT_GRACE


__all__ = ["HINT_GRACE", "SNIPPET_LENGTH", "find_user_entry", "normalize_text", "prompt_matches"]
