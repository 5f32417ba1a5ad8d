"""buddy-replies diagnostics CLI."""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from buddy_replies.config import BuddySettings
from buddy_replies.prompts import PromptLogReader
from buddy_replies.replies import resolve_from_entries
from buddy_replies.transcripts import TranscriptStore

PREVIEW_CHARS = 80


def load_reader(settings: BuddySettings, override: str | None = None) -> PromptLogReader:
    path = Path(override).expanduser() if override else settings.prompt_log_path.expanduser()
    return PromptLogReader(path)


def _preview(text: str) -> str:
    flattened = " ".join(text.split())
    if len(flattened) <= PREVIEW_CHARS:
        return flattened
    return flattened[: PREVIEW_CHARS - 3] + "..."


def cmd_prompts(args: argparse.Namespace) -> int:
    settings = BuddySettings()
    reader = load_reader(settings, args.log)
    if not reader.exists():
        print(f"Prompt log not found: {reader.path}", file=sys.stderr)
        return 1

    store = TranscriptStore(ttl=settings.transcript_cache_ttl, capacity=settings.transcript_cache_size)
    rows: list[dict[str, object]] = []
    for prompt in reader.read_recent(args.limit or settings.recent_prompt_limit):
        reply = None
        if prompt.transcript_path is not None:
            result = resolve_from_entries(
                store.load(prompt.transcript_path),
                prompt.prompt_text,
                timestamp_hint=prompt.timestamp,
            )
            reply = result.reply
        rows.append(
            {
                "timestamp": prompt.timestamp,
                "session_id": prompt.session_id,
                "prompt": prompt.prompt_text,
                "transcript_path": str(prompt.transcript_path) if prompt.transcript_path else None,
                "reply": reply.as_dict() if reply else None,
            }
        )

    if args.json:
        print(json.dumps(rows, indent=2))
    else:
        for row in rows:
            print(f"[{row['timestamp']}] {row['session_id']}: {_preview(str(row['prompt']))}")
            reply = row["reply"]
            if isinstance(reply, dict):
                print(f"  -> {_preview(reply['text'])}")
            else:
                print("  -> (no reply yet)")
    return 0


def cmd_transcript(args: argparse.Namespace) -> int:
    path = Path(args.path).expanduser()
    if not path.is_file():
        print(f"Transcript not found: {path}", file=sys.stderr)
        return 1

    entries = TranscriptStore().load(path)
    rows = [
        {
            "id": entry.id,
            "parent_id": entry.parent_id,
            "role": entry.role,
            "timestamp": entry.timestamp,
            "text": _preview(entry.text),
        }
        for entry in entries
    ]
    if args.json:
        print(json.dumps(rows, indent=2))
    else:
        for row in rows:
            print(f"{row['id']} <- {row['parent_id']} [{row['role']}] {row['text']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Inspect prompts, transcripts and resolved replies.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    prompts = sub.add_parser("prompts", help="Show recent prompts and their replies")
    prompts.add_argument("--limit", type=int, default=None, help="Number of prompts to show")
    prompts.add_argument("--log", default=None, help="Override the prompt log path")
    prompts.add_argument("--json", action="store_true", help="Emit JSON")
    prompts.set_defaults(func=cmd_prompts)

    transcript = sub.add_parser("transcript", help="Summarize the records of a transcript file")
    transcript.add_argument("path", help="Path to a JSONL transcript")
    transcript.add_argument("--json", action="store_true", help="Emit JSON")
    transcript.set_defaults(func=cmd_transcript)
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )
    exit_code = args.func(args)
    if exit_code:
        raise SystemExit(exit_code)


if __name__ == "__main__":
    main()
