"""File-change notification sources.

The engine only needs "this path changed" signals and tolerates missed or
duplicate ones, so any backend satisfying :class:`ChangeSource` will do.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from collections import defaultdict
from pathlib import Path
from typing import Any, Callable, Protocol

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .errors import ChangeSourceError

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Path], None]


class Subscription(Protocol):
    """Handle for one active path subscription."""

    @property
    def path(self) -> Path:
        ...

    def close(self) -> None:
        ...


class ChangeSource(Protocol):
    """Minimal API the watcher and engine need from a notification backend."""

    def subscribe(self, path: Path, callback: ChangeCallback) -> Subscription:
        ...

    def close(self) -> None:
        ...


class _WatchdogSubscription:
    def __init__(
        self,
        source: "WatchdogChangeSource",
        path: Path,
        callback: ChangeCallback,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._source = source
        self._path = path
        self._callback = callback
        self._loop = loop
        self._closed = False

    @property
    def path(self) -> Path:
        return self._path

    def notify(self) -> None:
        """Called from the observer thread; hands the event to the owning loop."""

        if self._closed:
            return
        try:
            self._loop.call_soon_threadsafe(self._deliver)
        except RuntimeError:
            pass  # Loop closed

    def _deliver(self) -> None:
        if not self._closed:
            self._callback(self._path)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._source._release(self)


class _DirectoryHandler(FileSystemEventHandler):
    """Dispatches events in one directory to subscriptions by file name."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self._subscriptions: dict[str, list[_WatchdogSubscription]] = defaultdict(list)

    def add(self, subscription: _WatchdogSubscription) -> None:
        with self._lock:
            self._subscriptions[subscription.path.name].append(subscription)

    def remove(self, subscription: _WatchdogSubscription) -> bool:
        """Drop ``subscription``; returns True when the handler has none left."""

        with self._lock:
            bucket = self._subscriptions.get(subscription.path.name, [])
            if subscription in bucket:
                bucket.remove(subscription)
            if not bucket:
                self._subscriptions.pop(subscription.path.name, None)
            return not self._subscriptions

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        names = {Path(os.fsdecode(event.src_path)).name}
        dest = getattr(event, "dest_path", None)
        if dest:
            names.add(Path(os.fsdecode(dest)).name)
        with self._lock:
            targets = [sub for name in names for sub in self._subscriptions.get(name, [])]
        for subscription in targets:
            subscription.notify()


class WatchdogChangeSource:
    """Change notifications backed by a watchdog observer.

    One handler is scheduled per parent directory and unscheduled when its last
    subscription closes. Callbacks run on the asyncio loop that subscribed.
    """

    def __init__(
        self,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        observer_factory: Callable[[], Any] | None = None,
    ) -> None:
        self._loop = loop
        self._observer_factory = observer_factory or Observer
        self._observer: Any | None = None
        self._lock = threading.Lock()
        self._directories: dict[Path, tuple[_DirectoryHandler, Any]] = {}

    def _ensure_observer(self) -> Any:
        if self._observer is None:
            observer = self._observer_factory()
            observer.daemon = True
            observer.start()
            self._observer = observer
        return self._observer

    def subscribe(self, path: Path, callback: ChangeCallback) -> _WatchdogSubscription:
        target = Path(path)
        directory = target.parent
        if not directory.is_dir():
            raise ChangeSourceError(f"Cannot watch {target}: directory {directory} does not exist")

        try:
            loop = self._loop or asyncio.get_running_loop()
        except RuntimeError as exc:
            raise ChangeSourceError("Change subscriptions require a running event loop") from exc

        subscription = _WatchdogSubscription(self, target, callback, loop)
        with self._lock:
            entry = self._directories.get(directory)
            if entry is None:
                handler = _DirectoryHandler()
                try:
                    watch = self._ensure_observer().schedule(handler, str(directory), recursive=False)
                except OSError as exc:
                    raise ChangeSourceError(f"Cannot watch {directory}: {exc}") from exc
                entry = (handler, watch)
                self._directories[directory] = entry
                logger.debug("Watching directory %s", directory)
            entry[0].add(subscription)
        return subscription

    def _release(self, subscription: _WatchdogSubscription) -> None:
        directory = subscription.path.parent
        with self._lock:
            entry = self._directories.get(directory)
            if entry is None:
                return
            handler, watch = entry
            if handler.remove(subscription):
                del self._directories[directory]
                if self._observer is not None:
                    try:
                        self._observer.unschedule(watch)
                    except KeyError:
                        pass
                logger.debug("Stopped watching directory %s", directory)

    @property
    def watched_directories(self) -> list[Path]:
        with self._lock:
            return list(self._directories)

    def close(self) -> None:
        with self._lock:
            observer, self._observer = self._observer, None
            self._directories.clear()
        if observer is not None:
            observer.stop()
            observer.join(timeout=2)


class _FakeSubscription:
    def __init__(self, source: "FakeChangeSource", path: Path, callback: ChangeCallback) -> None:
        self._source = source
        self._path = path
        self._callback = callback
        self.closed = False

    @property
    def path(self) -> Path:
        return self._path

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._source.close_count += 1
        self._source._subscriptions.remove(self)


class FakeChangeSource:
    """In-memory change source for tests; events are raised with :meth:`emit`."""

    def __init__(self, *, failing_paths: set[Path] | None = None) -> None:
        self._subscriptions: list[_FakeSubscription] = []
        self._failing = {Path(path) for path in (failing_paths or set())}
        self.close_count = 0
        self.closed = False

    def subscribe(self, path: Path, callback: ChangeCallback) -> _FakeSubscription:
        target = Path(path)
        if target in self._failing:
            raise ChangeSourceError(f"Cannot watch {target}")
        subscription = _FakeSubscription(self, target, callback)
        self._subscriptions.append(subscription)
        return subscription

    def emit(self, path: Path) -> int:
        """Deliver a change for ``path``; returns the number of callbacks run."""

        target = Path(path)
        matching = [sub for sub in self._subscriptions if sub.path == target]
        for subscription in matching:
            subscription._callback(target)
        return len(matching)

    @property
    def active_paths(self) -> list[Path]:
        return [sub.path for sub in self._subscriptions]

    def close(self) -> None:
        self.closed = True


__all__ = [
    "ChangeCallback",
    "ChangeSource",
    "FakeChangeSource",
    "Subscription",
    "WatchdogChangeSource",
]
