"""Process-lifetime cache of resolved replies keyed by prompt fingerprint."""

from __future__ import annotations

import threading

from .models import ResolvedReply


class ReplyCache:
    """Fingerprint to reply map; entries live as long as the owning engine."""

    def __init__(self) -> None:
        self._replies: dict[str, ResolvedReply] = {}
        self._lock = threading.Lock()

    def get(self, fingerprint: str) -> ResolvedReply | None:
        with self._lock:
            return self._replies.get(fingerprint)

    def put(self, fingerprint: str, reply: ResolvedReply) -> None:
        with self._lock:
            self._replies[fingerprint] = reply

    def __contains__(self, fingerprint: object) -> bool:
        with self._lock:
            return fingerprint in self._replies

    def __len__(self) -> int:
        with self._lock:
            return len(self._replies)


__all__ = ["ReplyCache"]
