"""Tool registration for the buddy-replies MCP server."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from fastmcp import FastMCP
from pydantic import ValidationError

from ..engine import ConversationItem, ReplyResolutionEngine
from ..prompts import PromptRecord

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class ToolHandles:
    recent_conversation: Any
    resolve_reply: Any
    watcher_status: Any


def conversation_payload(item: ConversationItem, now: datetime | None = None) -> dict[str, Any]:
    """Serialize a prompt/reply pair for the chat panel."""

    prompt, reply = item
    payload: dict[str, Any] = {
        "prompt": prompt.prompt_text,
        "prompt_time": prompt.display_time(now),
        "timestamp": prompt.timestamp,
        "session_id": prompt.session_id,
        "fingerprint": prompt.fingerprint,
    }
    if reply is not None:
        payload["reply"] = reply.as_dict()
    return payload


def register_tools(server: FastMCP, *, engine: ReplyResolutionEngine) -> ToolHandles:
    """Register the reply tools on the server."""

    async def _recent_conversation(limit: int | None = None) -> list[dict[str, Any]]:
        """Return the latest prompts with any replies written so far, oldest first."""

        if limit is not None and limit < 1:
            raise ValueError("limit must be >= 1")
        conversation = await engine.recent_conversation(limit)
        return [conversation_payload(item) for item in conversation]

    async def _resolve_reply(
        prompt: str,
        timestamp: str,
        session_id: str | None = None,
        transcript_path: str | None = None,
    ) -> dict[str, Any]:
        """Resolve the reply for one prompt, or start watching for it."""

        try:
            record = PromptRecord(
                timestamp=timestamp,
                prompt_text=prompt,
                session_id=session_id,
                transcript_path=transcript_path,
            )
        except ValidationError as exc:
            raise ValueError(f"Invalid prompt: {exc.errors()[0]['msg']}") from exc

        reply = await engine.resolve(record)
        if reply is not None:
            return {"status": "resolved", "fingerprint": record.fingerprint, "reply": reply.as_dict()}
        if record.fingerprint in engine.watcher:
            status = "pending"
        else:
            status = "unavailable"
        logger.debug("Reply not yet available", extra={"fingerprint": record.fingerprint, "status": status})
        return {"status": status, "fingerprint": record.fingerprint}

    def _watcher_status() -> dict[str, Any]:
        """Report pending watches and watched transcripts."""

        return engine.watcher.status()

    tool_recent = server.tool(
        name="recent_conversation",
        description="List the most recent prompts from the activity log with their assistant replies.",
    )(_recent_conversation)

    tool_resolve = server.tool(
        name="resolve_reply",
        description="Find the assistant reply for a prompt, watching the transcript if it is not written yet.",
    )(_resolve_reply)

    tool_status = server.tool(
        name="watcher_status",
        description="Show prompts still waiting for a reply and the transcripts being watched.",
    )(_watcher_status)

    return ToolHandles(
        recent_conversation=tool_recent,
        resolve_reply=tool_resolve,
        watcher_status=tool_status,
    )


__all__ = ["ToolHandles", "conversation_payload", "register_tools"]
