"""FastMCP server bootstrap for buddy-replies."""

import json
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Callable, Optional

from fastmcp import FastMCP

from . import __version__
from .config import BuddySettings, get_settings
from .engine import ConversationItem, ReplyResolutionEngine, create_engine
from .replies import ResolvedReply
from .tools import register_tools

logger = logging.getLogger(__name__)


def configure_logging(level: str) -> None:
    """Configure root logging for the buddy-replies server."""

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )


def log_resolution(fingerprint: str, reply: ResolvedReply) -> None:
    logger.info(
        "Reply resolved",
        extra={"fingerprint": fingerprint, "source_entry_id": reply.source_entry_id},
    )


def log_conversation_update(conversation: list[ConversationItem]) -> None:
    answered = sum(1 for _, reply in conversation if reply is not None)
    logger.info(
        "Prompt log updated",
        extra={"prompts": len(conversation), "answered": answered},
    )


def engine_lifespan(
    engine: ReplyResolutionEngine,
) -> Callable[[Any], Any]:
    """Build a server lifespan that watches the prompt log while the server runs."""

    @asynccontextmanager
    async def lifespan(_server: Any) -> AsyncIterator[dict[str, Any]]:
        engine.start(log_conversation_update)
        try:
            yield {}
        finally:
            engine.stop()

    return lifespan


def create_server(
    settings: Optional[BuddySettings] = None,
    engine: ReplyResolutionEngine | None = None,
) -> FastMCP:
    """Instantiate the FastMCP server around a reply resolution engine."""

    settings = settings or get_settings()
    if engine is None:
        engine = create_engine(settings, on_reply_resolved=log_resolution)

    server = FastMCP(
        name="Buddy Replies",
        instructions=(
            "Surfaces the prompts recorded in the activity log together with the "
            "assistant replies found in their transcripts. Replies that are not "
            "written yet are watched and resolved in the background."
        ),
        lifespan=engine_lifespan(engine),
    )

    handles = register_tools(server, engine=engine)

    def status_resource() -> str:
        """Return a JSON string summarizing runtime state."""

        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "server_version": __version__,
            "log_level": settings.log_level,
            "settings": {
                "transcript_cache_ttl": settings.transcript_cache_ttl,
                "transcript_cache_size": settings.transcript_cache_size,
                "max_attempts": settings.max_attempts,
                "max_backoff": settings.max_backoff,
                "stale_after": settings.stale_after,
            },
            "engine": engine.status(),
        }
        return json.dumps(payload)

    server.resource(
        "resource://buddy/status",
        name="buddy_status",
        description="Current state of the reply resolution engine.",
        mime_type="application/json",
    )(status_resource)

    setattr(server, "engine", engine)
    setattr(server, "tool_handles", handles)
    setattr(server, "status_payload", status_resource)
    return server


def main() -> None:
    """Entry point for running the buddy-replies server via CLI."""

    settings = get_settings()
    configure_logging(settings.log_level)

    server = create_server(settings)
    logging.getLogger(__name__).info(
        "Launching buddy-replies server",
        extra={
            "version": __version__,
            "log_level": settings.log_level,
            "prompt_log": str(settings.prompt_log_path),
        },
    )
    try:
        server.run()
    finally:
        getattr(server, "engine").dispose()


if __name__ == "__main__":
    main()
