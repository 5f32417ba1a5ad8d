"""Timestamp helpers for prompt log and transcript records."""

from __future__ import annotations

from datetime import datetime, timezone

_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def parse_timestamp(value: str | None) -> datetime | None:
    """Parse an ISO-8601 or ``YYYY-MM-DD HH:MM:SS`` string into an aware datetime.

    Naive values are interpreted as local time. Returns ``None`` when the value
    cannot be parsed.
    """

    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith(("Z", "z")):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.astimezone()
    return parsed


def sort_key(value: str | None) -> datetime:
    """Ordering key that places unparseable timestamps first."""

    return parse_timestamp(value) or _EPOCH


def format_relative(value: str, now: datetime | None = None) -> str:
    """Render ``value`` relative to ``now`` the way the chat panel shows it."""

    parsed = parse_timestamp(value)
    if parsed is None:
        return value

    current = now or datetime.now(timezone.utc)
    if current.tzinfo is None:
        current = current.astimezone()
    elapsed = (current - parsed).total_seconds()

    if elapsed < 3600:
        minutes = int(elapsed // 60)
        return "Just now" if minutes <= 1 else f"{minutes}m ago"
    if elapsed < 86400:
        return f"{int(elapsed // 3600)}h ago"
    return parsed.astimezone().date().isoformat()


__all__ = ["format_relative", "parse_timestamp", "sort_key"]
