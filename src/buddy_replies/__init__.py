"""Resolve assistant replies for prompts recorded in the activity log."""

__version__ = "0.1.0"

from .engine import ReplyResolutionEngine, create_engine
from .errors import ChangeSourceError, ReplyEngineError

__all__ = [
    "ChangeSourceError",
    "ReplyEngineError",
    "ReplyResolutionEngine",
    "create_engine",
    "__version__",
]
