"""Cached reader for line-delimited transcript files."""

from __future__ import annotations

import json
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from .models import TranscriptEntry

logger = logging.getLogger(__name__)

DEFAULT_TTL = 30.0
DEFAULT_CAPACITY = 10


def _read_text(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def parse_transcript_line(line: str) -> TranscriptEntry | None:
    """Parse one JSONL record, returning ``None`` for blank or malformed lines."""

    stripped = line.strip()
    if not stripped:
        return None
    try:
        return TranscriptEntry.model_validate(json.loads(stripped))
    except (json.JSONDecodeError, ValidationError):
        return None


def parse_transcript(text: str) -> tuple[TranscriptEntry, ...]:
    """Parse a whole transcript body; corrupt lines are dropped."""

    entries = (parse_transcript_line(line) for line in text.splitlines())
    return tuple(entry for entry in entries if entry is not None)


@dataclass(slots=True)
class _CachedTranscript:
    entries: tuple[TranscriptEntry, ...]
    cached_at: float


class TranscriptStore:
    """Load transcripts with a per-path TTL cache bounded by ``capacity`` files.

    When the cache is full the entry with the oldest insertion time is evicted
    before a new one is stored.
    """

    def __init__(
        self,
        *,
        ttl: float = DEFAULT_TTL,
        capacity: int = DEFAULT_CAPACITY,
        reader: Callable[[Path], str] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self._ttl = ttl
        self._capacity = capacity
        self._reader = reader or _read_text
        self._clock = clock or time.monotonic
        self._cache: dict[Path, _CachedTranscript] = {}
        self._lock = threading.Lock()

    @property
    def cached_paths(self) -> list[Path]:
        with self._lock:
            return list(self._cache)

    def load(self, path: str | Path, *, refresh: bool = False) -> tuple[TranscriptEntry, ...]:
        """Return the parsed entries of ``path``.

        ``refresh`` bypasses a still-fresh cached value. Read failures yield an
        empty sequence and are not cached.
        """

        key = Path(path)
        now = self._clock()
        if not refresh:
            with self._lock:
                cached = self._cache.get(key)
                if cached is not None and now - cached.cached_at < self._ttl:
                    return cached.entries

        try:
            text = self._reader(key)
        except FileNotFoundError:
            logger.debug("Transcript not found", extra={"path": str(key)})
            return ()
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to read transcript %s: %s", key, exc)
            return ()

        entries = parse_transcript(text)
        with self._lock:
            self._cache.pop(key, None)
            if len(self._cache) >= self._capacity:
                oldest = min(self._cache, key=lambda item: self._cache[item].cached_at)
                del self._cache[oldest]
            self._cache[key] = _CachedTranscript(entries=entries, cached_at=now)
        return entries

    def invalidate(self, path: str | Path) -> None:
        with self._lock:
            self._cache.pop(Path(path), None)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()


__all__ = ["TranscriptStore", "parse_transcript", "parse_transcript_line"]
