"""Reply caching, resolution and asynchronous watching."""

from .cache import ReplyCache
from .models import PendingWatch, ReplyCallback, ResolvedReply, WatchState
from .resolution import ResolutionResult, resolve_from_entries
from .scheduler import RetryScheduler
from .watcher import ReplyWatcher

__all__ = [
    "PendingWatch",
    "ReplyCache",
    "ReplyCallback",
    "ReplyWatcher",
    "ResolutionResult",
    "ResolvedReply",
    "RetryScheduler",
    "WatchState",
    "resolve_from_entries",
]
