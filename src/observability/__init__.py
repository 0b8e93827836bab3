"""Logging setup and structured events for the scheduler."""

from . import fields
from .config import configure_logging
from .context import bind_context, clear_context, get_context, log_context
from .events import emit_event

__all__ = [
    "bind_context",
    "clear_context",
    "configure_logging",
    "emit_event",
    "fields",
    "get_context",
    "log_context",
]
