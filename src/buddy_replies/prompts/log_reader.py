"""Reader for the append-only prompt activity log.

Each line has the form ``[<timestamp>] <json>`` where the JSON object carries
``prompt``, ``session_id`` and optionally ``transcript_path``.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path

from pydantic import ValidationError

from .models import PromptRecord

logger = logging.getLogger(__name__)

_LINE_PATTERN = re.compile(r"^\[(.*?)\]\s+(.+)$")


def parse_log_line(line: str) -> PromptRecord | None:
    """Parse one activity log line; malformed lines yield ``None``."""

    match = _LINE_PATTERN.match(line.strip())
    if match is None:
        return None

    timestamp, payload = match.groups()
    try:
        data = json.loads(payload)
    except json.JSONDecodeError:
        return None
    if not isinstance(data, dict):
        return None

    prompt = data.get("prompt")
    if not isinstance(prompt, str) or not prompt.strip():
        return None

    try:
        return PromptRecord(
            timestamp=timestamp,
            prompt_text=prompt,
            session_id=data.get("session_id"),
            transcript_path=data.get("transcript_path"),
        )
    except ValidationError:
        return None


class PromptLogReader:
    """Reads prompt records from the activity log on disk."""

    def __init__(self, path: Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def exists(self) -> bool:
        return self._path.is_file()

    def read_prompts(self) -> list[PromptRecord]:
        """Return every parseable prompt, oldest first.

        A missing or unreadable log yields an empty list.
        """

        try:
            text = self._path.read_text(encoding="utf-8")
        except FileNotFoundError:
            logger.debug("Prompt log does not exist yet", extra={"path": str(self._path)})
            return []
        except (OSError, UnicodeDecodeError) as exc:
            logger.warning("Failed to read prompt log %s: %s", self._path, exc)
            return []

        records = (parse_log_line(line) for line in text.splitlines() if line.strip())
        return [record for record in records if record is not None]

    def read_recent(self, limit: int) -> list[PromptRecord]:
        """Return the last ``limit`` prompts, oldest first."""

        if limit < 1:
            return []
        return self.read_prompts()[-limit:]


__all__ = ["PromptLogReader", "parse_log_line"]
