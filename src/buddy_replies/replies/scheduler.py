"""Single cancellable timer driving reply retries."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)


class RetryScheduler:
    """Owns one timer handle, re-armed for the earliest due retry.

    Rescheduling always cancels the previous handle so at most one wake-up is
    outstanding regardless of how many watches are pending.
    """

    def __init__(
        self,
        callback: Callable[[], None],
        *,
        clock: Callable[[], float] | None = None,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        self._callback = callback
        self._clock = clock or time.monotonic
        self._loop = loop
        self._handle: asyncio.TimerHandle | None = None
        self._due_at: float | None = None

    @property
    def due_at(self) -> float | None:
        return self._due_at

    @property
    def active(self) -> bool:
        return self._handle is not None

    def schedule(self, due_at: float | None) -> None:
        """Arm the timer for ``due_at`` (clock time); ``None`` just cancels."""

        self.cancel()
        if due_at is None:
            return
        try:
            loop = self._loop or asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; retry timer not armed")
            return
        delay = max(0.0, due_at - self._clock())
        self._handle = loop.call_later(delay, self._fire)
        self._due_at = due_at

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
        self._handle = None
        self._due_at = None

    def _fire(self) -> None:
        self._handle = None
        self._due_at = None
        self._callback()


__all__ = ["RetryScheduler"]
