"""Follow parent/child links from a user record to the assistant's reply."""

from __future__ import annotations

from collections import defaultdict
from typing import Sequence

from .models import TranscriptEntry

MAX_DEPTH = 20


def walk_chain(
    entries: Sequence[TranscriptEntry],
    from_entry_id: str,
    *,
    max_depth: int = MAX_DEPTH,
) -> list[TranscriptEntry]:
    """Return the text-bearing assistant entries reachable from ``from_entry_id``.

    Assistant children of the current frontier are visited in file order.
    Entries without text (tool use, thinking) advance the frontier but are not
    recorded. The walk stops when nothing references the frontier, after
    ``max_depth`` hops, or when an identifier would be visited twice. When an
    entry has several assistant children the walk continues from the last one
    visited; subtrees under its earlier siblings are not explored. The reply
    proper is the last element; an empty list means no reply was written yet.
    """

    children: dict[str, list[TranscriptEntry]] = defaultdict(list)
    for entry in entries:
        if entry.role == "assistant" and entry.parent_id is not None:
            children[entry.parent_id].append(entry)

    found: list[TranscriptEntry] = []
    visited = {from_entry_id}
    frontier = from_entry_id
    hops = 0

    while hops < max_depth:
        step = children.get(frontier)
        if not step:
            break

        advanced = False
        for child in step:
            if child.id in visited or hops >= max_depth:
                continue
            visited.add(child.id)
            hops += 1
            if child.has_text:
                found.append(child)
            frontier = child.id
            advanced = True

        if not advanced:
            break

    return found


def final_reply(entries: Sequence[TranscriptEntry], from_entry_id: str) -> TranscriptEntry | None:
    """Return the terminal text-bearing reply to ``from_entry_id``, if written."""

    found = walk_chain(entries, from_entry_id)
    return found[-1] if found else None


__all__ = ["MAX_DEPTH", "final_reply", "walk_chain"]
