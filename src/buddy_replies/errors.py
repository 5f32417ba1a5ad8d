"""Exception types shared across the package."""

from __future__ import annotations


class ReplyEngineError(RuntimeError):
    """Base class for reply resolution errors."""


class ChangeSourceError(ReplyEngineError):
    """Raised when a file-change subscription cannot be established."""


__all__ = ["ChangeSourceError", "ReplyEngineError"]
