"""Watch transcripts for replies that were not written at prompt time.

Each unresolved prompt gets a :class:`PendingWatch`. A watch is re-checked when
its transcript changes and on an exponential backoff schedule, and removed when
the reply is found, its attempts run out, or it goes stale.

All mutation of the pending map and the subscription map happens on the event
loop thread; file-change callbacks are marshalled there by the change source.
"""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Any, Callable, Coroutine, Sequence

from ..errors import ChangeSourceError
from ..notify import ChangeSource, Subscription
from ..transcripts import TranscriptEntry, TranscriptStore
from .models import PendingWatch, ReplyCallback, ResolvedReply, WatchState
from .resolution import resolve_from_entries
from .scheduler import RetryScheduler

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 8
DEFAULT_INITIAL_BACKOFF = 1.0
DEFAULT_MAX_BACKOFF = 60.0
DEFAULT_STALE_AFTER = 300.0
DEFAULT_SWEEP_INTERVAL = 30.0
DEFAULT_RESOLVE_TIMEOUT = 5.0


class ReplyWatcher:
    """Owns pending watches, transcript subscriptions and the retry timer."""

    def __init__(
        self,
        store: TranscriptStore,
        change_source: ChangeSource,
        *,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_backoff: float = DEFAULT_INITIAL_BACKOFF,
        max_backoff: float = DEFAULT_MAX_BACKOFF,
        stale_after: float = DEFAULT_STALE_AFTER,
        sweep_interval: float = DEFAULT_SWEEP_INTERVAL,
        resolve_timeout: float = DEFAULT_RESOLVE_TIMEOUT,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._store = store
        self._change_source = change_source
        self._max_attempts = max_attempts
        self._initial_backoff = initial_backoff
        self._max_backoff = max_backoff
        self._stale_after = stale_after
        self._sweep_interval = sweep_interval
        self._resolve_timeout = resolve_timeout
        self._clock = clock or time.monotonic

        self._pending: dict[str, PendingWatch] = {}
        self._subscriptions: dict[Path, Subscription] = {}
        self._scheduler = RetryScheduler(self._on_timer, clock=self._clock)
        self._sweep_task: asyncio.Task[None] | None = None
        self._tasks: set[asyncio.Task[Any]] = set()
        self._inflight: dict[Path, asyncio.Event] = {}
        self._retired: set[str] = set()
        self._dirty: set[Path] = set()
        self._disposed = False

    @property
    def scheduler(self) -> RetryScheduler:
        return self._scheduler

    @property
    def max_attempts(self) -> int:
        return self._max_attempts

    @property
    def max_backoff(self) -> float:
        return self._max_backoff

    @property
    def watched_paths(self) -> list[Path]:
        return list(self._subscriptions)

    def get(self, prompt_id: str) -> PendingWatch | None:
        return self._pending.get(prompt_id)

    def __contains__(self, prompt_id: object) -> bool:
        return prompt_id in self._pending

    def __len__(self) -> int:
        return len(self._pending)

    def is_retired(self, prompt_id: str) -> bool:
        """True when the watch for ``prompt_id`` ended exhausted or stale."""

        return prompt_id in self._retired

    def register(
        self,
        prompt_id: str,
        transcript_path: Path,
        *,
        prompt_text: str,
        callback: ReplyCallback,
        matched_user_entry_id: str | None = None,
        timestamp_hint: str | None = None,
    ) -> bool:
        """Start watching for the reply to ``prompt_id``.

        Returns False when the watcher is disposed, the prompt is already
        being watched, or its earlier watch ended exhausted or stale.
        """

        if self._disposed:
            logger.debug("Ignoring watch registration after dispose", extra={"prompt_id": prompt_id})
            return False
        if prompt_id in self._pending or prompt_id in self._retired:
            return False

        path = Path(transcript_path)
        now = self._clock()
        self._pending[prompt_id] = PendingWatch(
            prompt_id=prompt_id,
            transcript_path=path,
            prompt_text=prompt_text,
            timestamp_hint=timestamp_hint,
            matched_user_entry_id=matched_user_entry_id,
            callback=callback,
            last_attempt_at=now,
            backoff_interval=self._initial_backoff,
            max_attempts=self._max_attempts,
            created_at=now,
        )
        self._subscribe(path)
        self._ensure_sweeper()
        self._reschedule()
        logger.info(
            "Watching for reply",
            extra={"prompt_id": prompt_id, "transcript_path": str(path)},
        )
        return True

    async def check_transcript(self, path: Path) -> int:
        """Re-read ``path`` and resolve the watches waiting on it.

        Notifications arriving while a check for the same path is running are
        coalesced into one extra pass; those callers wait for that pass and
        return 0. Returns the number of replies delivered.
        """

        path = Path(path)
        running = self._inflight.get(path)
        if running is not None:
            self._dirty.add(path)
            await running.wait()
            return 0

        done = asyncio.Event()
        self._inflight[path] = done
        resolved = 0
        try:
            while True:
                self._dirty.discard(path)
                resolved += await self._check_once(path)
                if path not in self._dirty:
                    break
        finally:
            del self._inflight[path]
            done.set()
        return resolved

    async def retry_due(self) -> int:
        """Retry every watch whose backoff has elapsed."""

        now = self._clock()
        due = [
            watch
            for watch in self._pending.values()
            if not watch.exhausted and watch.next_due <= now
        ]
        for watch in due:
            watch.attempts += 1
            watch.backoff_interval = min(watch.backoff_interval * 2, self._max_backoff)
            watch.last_attempt_at = now
            watch.state = WatchState.RETRYING
            logger.debug(
                "Retry %d/%d for prompt %s",
                watch.attempts,
                watch.max_attempts,
                watch.prompt_id,
            )

        resolved = 0
        for path in dict.fromkeys(watch.transcript_path for watch in due):
            resolved += await self.check_transcript(path)

        for watch in due:
            if watch.exhausted and self._finish(watch, WatchState.EXHAUSTED):
                logger.info(
                    "Gave up waiting for reply",
                    extra={"prompt_id": watch.prompt_id, "attempts": watch.attempts},
                )
                self._release_subscription(watch.transcript_path)

        self._reschedule()
        return resolved

    def sweep(self) -> int:
        """Drop exhausted or stale watches and unused subscriptions.

        Watches whose transcript is being checked are left for the next sweep.
        """

        now = self._clock()
        removed = 0
        for watch in list(self._pending.values()):
            if watch.transcript_path in self._inflight:
                continue
            if watch.exhausted:
                state = WatchState.EXHAUSTED
            elif now - watch.last_attempt_at > self._stale_after:
                state = WatchState.STALE
            else:
                continue
            if self._finish(watch, state):
                removed += 1
                logger.info(
                    "Removed %s watch",
                    state.value,
                    extra={"prompt_id": watch.prompt_id},
                )

        for path in list(self._subscriptions):
            self._release_subscription(path)
        if removed:
            self._reschedule()
        return removed

    def status(self) -> dict[str, Any]:
        """Snapshot of pending watches for diagnostics."""

        return {
            "pending_count": len(self._pending),
            "retired_count": len(self._retired),
            "watched_transcripts": [str(path) for path in self._subscriptions],
            "next_retry_at": self._scheduler.due_at,
            "pending": [
                {
                    "prompt_id": watch.prompt_id,
                    "state": watch.state.value,
                    "attempts": watch.attempts,
                    "max_attempts": watch.max_attempts,
                    "backoff_interval": watch.backoff_interval,
                    "transcript_path": str(watch.transcript_path),
                }
                for watch in self._pending.values()
            ],
        }

    def dispose(self) -> None:
        """Clear watches, close subscriptions and cancel timers. Idempotent."""

        self._disposed = True
        self._pending.clear()
        self._scheduler.cancel()

        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            subscription.close()

        if self._sweep_task is not None:
            self._sweep_task.cancel()
            self._sweep_task = None
        for task in list(self._tasks):
            task.cancel()
        self._tasks.clear()

    async def _check_once(self, path: Path) -> int:
        watches = [watch for watch in self._pending.values() if watch.transcript_path == path]
        if not watches:
            self._release_subscription(path)
            return 0

        entries = await self._load(path)
        if entries is None:
            return 0

        delivered = 0
        for watch in watches:
            result = resolve_from_entries(
                entries,
                watch.prompt_text,
                timestamp_hint=watch.timestamp_hint,
                user_entry_id=watch.matched_user_entry_id,
            )
            if watch.matched_user_entry_id is None and result.user_entry_id is not None:
                watch.matched_user_entry_id = result.user_entry_id
            if result.reply is not None and self._finish(watch, WatchState.RESOLVED):
                self._deliver(watch, result.reply)
                delivered += 1

        self._release_subscription(path)
        if delivered:
            self._reschedule()
        return delivered

    async def _load(self, path: Path) -> Sequence[TranscriptEntry] | None:
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(self._store.load, path, refresh=True),
                timeout=self._resolve_timeout,
            )
        except asyncio.TimeoutError:
            logger.warning("Timed out reading transcript %s", path)
            return None

    def _finish(self, watch: PendingWatch, state: WatchState) -> bool:
        if self._pending.get(watch.prompt_id) is not watch:
            return False
        del self._pending[watch.prompt_id]
        watch.state = state
        if state in (WatchState.EXHAUSTED, WatchState.STALE):
            self._retired.add(watch.prompt_id)
        return True

    def _deliver(self, watch: PendingWatch, reply: ResolvedReply) -> None:
        logger.info(
            "Found reply",
            extra={"prompt_id": watch.prompt_id, "attempts": watch.attempts},
        )
        try:
            watch.callback(watch.prompt_id, reply)
        except Exception:
            logger.exception("Reply callback failed for prompt %s", watch.prompt_id)

    def _subscribe(self, path: Path) -> None:
        if path in self._subscriptions:
            return
        try:
            self._subscriptions[path] = self._change_source.subscribe(path, self._on_file_changed)
        except ChangeSourceError as exc:
            logger.warning("Falling back to timed retries for %s: %s", path, exc)
            return
        logger.debug("Subscribed to transcript %s", path)

    def _release_subscription(self, path: Path) -> None:
        if any(watch.transcript_path == path for watch in self._pending.values()):
            return
        subscription = self._subscriptions.pop(path, None)
        if subscription is not None:
            subscription.close()
            logger.debug("Unsubscribed from transcript %s", path)

    def _reschedule(self) -> None:
        if self._disposed:
            return
        due = min(
            (watch.next_due for watch in self._pending.values() if not watch.exhausted),
            default=None,
        )
        self._scheduler.schedule(due)

    def _on_file_changed(self, path: Path) -> None:
        self._spawn(self.check_transcript(path))

    def _on_timer(self) -> None:
        self._spawn(self.retry_due())

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> None:
        if self._disposed:
            coro.close()
            return
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Reply watcher task failed: %s", exc, exc_info=exc)

    def _ensure_sweeper(self) -> None:
        if self._sweep_task is not None and not self._sweep_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._sweep_task = loop.create_task(self._sweep_loop())

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self._sweep_interval)
            try:
                self.sweep()
            except Exception:
                logger.exception("Reply watcher sweep failed")


__all__ = ["ReplyWatcher"]
