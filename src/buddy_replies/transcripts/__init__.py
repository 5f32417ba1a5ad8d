"""Transcript parsing, matching and chain walking."""

from .chain import MAX_DEPTH, final_reply, walk_chain
from .matcher import find_user_entry, normalize_text, prompt_matches
from .models import Blocks, ContentBlock, PlainText, TranscriptEntry
from .store import TranscriptStore, parse_transcript, parse_transcript_line

__all__ = [
    "Blocks",
    "ContentBlock",
    "MAX_DEPTH",
    "PlainText",
    "TranscriptEntry",
    "TranscriptStore",
    "final_reply",
    "find_user_entry",
    "normalize_text",
    "parse_transcript",
    "parse_transcript_line",
    "prompt_matches",
    "walk_chain",
]
