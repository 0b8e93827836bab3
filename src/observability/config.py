"""Stdout logging for the scheduler process.

One handler on the root logger writes either newline-delimited JSON (the
default, for log collectors) or readable lines ending in ``key=value``
pairs. Both shapes include the bound log context plus the event name and
fields attached by :func:`observability.events.emit_event`.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from . import fields
from .context import bind_context, get_context

EVENT_FIELDS_ATTR = "event_fields"
_PLAIN_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_PLAIN_DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


class ContextFilter(logging.Filter):
    """Copy the current log context onto every record as ``record.context``."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.context = get_context()
        return True


def record_fields(record: logging.LogRecord) -> dict[str, Any]:
    """Return the structured extras of ``record``: context, then event and its fields."""
    extras: dict[str, Any] = dict(getattr(record, "context", None) or {})
    event = getattr(record, fields.EVENT, None)
    if event:
        extras[fields.EVENT] = event
    extras.update(getattr(record, EVENT_FIELDS_ATTR, None) or {})
    return extras


class JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        line = {
            fields.TIMESTAMP: datetime.now(timezone.utc).isoformat(),
            fields.LEVEL: record.levelname,
            fields.LOGGER: record.name,
            fields.MESSAGE: record.getMessage(),
            **record_fields(record),
        }
        if record.exc_info:
            line["exception"] = self.formatException(record.exc_info)
        return json.dumps(line, default=str, separators=(",", ":"))


class PlainFormatter(logging.Formatter):
    def __init__(self) -> None:
        super().__init__(fmt=_PLAIN_FORMAT, datefmt=_PLAIN_DATE_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        extras = record_fields(record)
        pairs = [f"{key}={extras[key]}" for key in sorted(extras)]
        return " ".join([super().format(record), *pairs])


def configure_logging(
    *,
    level: str = "INFO",
    json_output: bool = True,
    service: str | None = None,
    environment: str | None = None,
) -> None:
    """Install a single stdout handler on the root logger.

    Calling this again swaps the handler rather than adding a second one.
    ``service`` and ``environment`` are bound into the log context.
    """
    level_name = level.upper()
    handler = logging.StreamHandler(stream=sys.stdout)
    handler.setLevel(level_name)
    handler.addFilter(ContextFilter())
    handler.setFormatter(JsonFormatter() if json_output else PlainFormatter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(level_name)

    bind_context(**{fields.SERVICE: service, fields.ENVIRONMENT: environment})
