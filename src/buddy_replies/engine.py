"""Reply resolution engine.

Reads prompts from the activity log, resolves each against its transcript
immediately when possible, and hands unresolved prompts to the reply watcher.
Every resolved reply is cached by prompt fingerprint and delivered at most once.
"""

from __future__ import annotations

import asyncio
import logging
from functools import partial
from pathlib import Path
from typing import Any, Callable, Optional

from .config import BuddySettings, get_settings
from .errors import ChangeSourceError
from .notify import ChangeSource, Subscription, WatchdogChangeSource
from .prompts import PromptLogReader, PromptRecord
from .replies import (
    ReplyCache,
    ReplyCallback,
    ReplyWatcher,
    ResolutionResult,
    ResolvedReply,
    resolve_from_entries,
)
from .transcripts import TranscriptStore

logger = logging.getLogger(__name__)

ConversationItem = tuple[PromptRecord, Optional[ResolvedReply]]
UpdateCallback = Callable[[list[ConversationItem]], None]


class ReplyResolutionEngine:
    """Owns the transcript store, reply cache and watcher for one consumer."""

    def __init__(
        self,
        log_reader: PromptLogReader,
        change_source: ChangeSource,
        *,
        store: TranscriptStore | None = None,
        cache: ReplyCache | None = None,
        watcher: ReplyWatcher | None = None,
        resolve_timeout: float = 5.0,
        debounce_interval: float = 0.5,
        recent_prompt_limit: int = 3,
        on_reply_resolved: ReplyCallback | None = None,
    ) -> None:
        self._log_reader = log_reader
        self._change_source = change_source
        self._store = store if store is not None else TranscriptStore()
        self._cache = cache if cache is not None else ReplyCache()
        self._watcher = watcher if watcher is not None else ReplyWatcher(
            self._store,
            change_source,
            resolve_timeout=resolve_timeout,
        )
        self._resolve_timeout = resolve_timeout
        self._debounce_interval = debounce_interval
        self._recent_prompt_limit = recent_prompt_limit
        self._on_reply_resolved = on_reply_resolved

        self._resolving: set[str] = set()
        self._log_subscription: Subscription | None = None
        self._on_update: UpdateCallback | None = None
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._disposed = False

    @property
    def log_reader(self) -> PromptLogReader:
        return self._log_reader

    @property
    def store(self) -> TranscriptStore:
        return self._store

    @property
    def cache(self) -> ReplyCache:
        return self._cache

    @property
    def watcher(self) -> ReplyWatcher:
        return self._watcher

    async def resolve(
        self,
        prompt: PromptRecord,
        callback: ReplyCallback | None = None,
    ) -> ResolvedReply | None:
        """Return the reply to ``prompt`` if it is already written.

        Otherwise the prompt is watched and ``callback`` (plus the engine-wide
        ``on_reply_resolved``) fires once the reply appears. A cached reply is
        returned without invoking callbacks again. A prompt whose watch ran out
        of attempts or went stale is not retried; only a new submission, with
        its own fingerprint, starts another watch.
        """

        fingerprint = prompt.fingerprint
        cached = self._cache.get(fingerprint)
        if cached is not None:
            return cached
        if prompt.transcript_path is None or self._disposed:
            return None
        if fingerprint in self._watcher or fingerprint in self._resolving:
            return None
        if self._watcher.is_retired(fingerprint):
            return None

        self._resolving.add(fingerprint)
        try:
            result = await self._resolve_now(prompt, prompt.transcript_path)
            if result.reply is not None:
                self._cache.put(fingerprint, result.reply)
                self._notify(fingerprint, result.reply, callback)
                return result.reply

            self._watcher.register(
                fingerprint,
                prompt.transcript_path,
                prompt_text=prompt.prompt_text,
                callback=partial(self._on_watch_resolved, callback),
                matched_user_entry_id=result.user_entry_id,
                timestamp_hint=prompt.timestamp,
            )
            return None
        finally:
            self._resolving.discard(fingerprint)

    async def recent_conversation(self, limit: int | None = None) -> list[ConversationItem]:
        """Resolve the most recent prompts, oldest first."""

        prompts = await asyncio.to_thread(
            self._log_reader.read_recent, limit or self._recent_prompt_limit
        )
        replies = await asyncio.gather(*(self.resolve(prompt) for prompt in prompts))
        return list(zip(prompts, replies))

    def start(self, on_update: UpdateCallback) -> bool:
        """Deliver ``recent_conversation()`` to ``on_update`` whenever the log changes."""

        self._on_update = on_update
        if self._log_subscription is not None:
            return True
        try:
            self._log_subscription = self._change_source.subscribe(
                self._log_reader.path, self._on_log_changed
            )
        except ChangeSourceError as exc:
            logger.warning("Prompt log watching unavailable: %s", exc)
            return False
        logger.info("Watching prompt log", extra={"path": str(self._log_reader.path)})
        return True

    def stop(self) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._log_subscription is not None:
            self._log_subscription.close()
            self._log_subscription = None
            logger.info("Stopped watching prompt log")

    def dispose(self) -> None:
        """Stop watching and release every timer and subscription. Idempotent."""

        if self._disposed:
            return
        self._disposed = True
        self.stop()
        self._watcher.dispose()
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()
        self._change_source.close()

    def status(self) -> dict[str, Any]:
        return {
            "prompt_log": str(self._log_reader.path),
            "prompt_log_exists": self._log_reader.exists(),
            "log_watch_active": self._log_subscription is not None,
            "cached_replies": len(self._cache),
            "cached_transcripts": [str(path) for path in self._store.cached_paths],
            "watcher": self._watcher.status(),
        }

    async def _resolve_now(self, prompt: PromptRecord, path: Path) -> ResolutionResult:
        def _attempt() -> ResolutionResult:
            entries = self._store.load(path)
            return resolve_from_entries(
                entries,
                prompt.prompt_text,
                timestamp_hint=prompt.timestamp,
            )

        try:
            return await asyncio.wait_for(asyncio.to_thread(_attempt), timeout=self._resolve_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out resolving reply from %s", path)
            return ResolutionResult(user_entry_id=None, reply=None)

    def _on_watch_resolved(
        self,
        callback: ReplyCallback | None,
        fingerprint: str,
        reply: ResolvedReply,
    ) -> None:
        self._cache.put(fingerprint, reply)
        self._notify(fingerprint, reply, callback)

    def _notify(self, fingerprint: str, reply: ResolvedReply, callback: ReplyCallback | None) -> None:
        for target in (callback, self._on_reply_resolved):
            if target is None:
                continue
            try:
                target(fingerprint, reply)
            except Exception:
                logger.exception("Reply callback failed for prompt %s", fingerprint)

    def _on_log_changed(self, _path: Any) -> None:
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
        loop = asyncio.get_running_loop()
        self._debounce_handle = loop.call_later(self._debounce_interval, self._reload)

    def _reload(self) -> None:
        self._debounce_handle = None
        task = asyncio.get_running_loop().create_task(self._deliver_update())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _deliver_update(self) -> None:
        if self._on_update is None:
            return
        conversation = await self.recent_conversation()
        try:
            self._on_update(conversation)
        except Exception:
            logger.exception("Prompt update callback failed")


def create_engine(
    settings: BuddySettings | None = None,
    *,
    change_source: ChangeSource | None = None,
    on_reply_resolved: ReplyCallback | None = None,
) -> ReplyResolutionEngine:
    """Build an engine wired from ``settings``."""

    settings = settings or get_settings()
    source = change_source if change_source is not None else WatchdogChangeSource()
    store = TranscriptStore(
        ttl=settings.transcript_cache_ttl,
        capacity=settings.transcript_cache_size,
    )
    watcher = ReplyWatcher(
        store,
        source,
        max_attempts=settings.max_attempts,
        initial_backoff=settings.initial_backoff,
        max_backoff=settings.max_backoff,
        stale_after=settings.stale_after,
        sweep_interval=settings.sweep_interval,
        resolve_timeout=settings.resolve_timeout,
    )
    return ReplyResolutionEngine(
        PromptLogReader(settings.prompt_log_path),
        source,
        store=store,
        watcher=watcher,
        resolve_timeout=settings.resolve_timeout,
        debounce_interval=settings.debounce_interval,
        recent_prompt_limit=settings.recent_prompt_limit,
        on_reply_resolved=on_reply_resolved,
    )


__all__ = ["ConversationItem", "ReplyResolutionEngine", "UpdateCallback", "create_engine"]
