"""Prompt activity log records and reader exports."""

from .log_reader import PromptLogReader, parse_log_line
from .models import PromptRecord, prompt_fingerprint

__all__ = [
    "PromptLogReader",
    "PromptRecord",
    "parse_log_line",
    "prompt_fingerprint",
]
