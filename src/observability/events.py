"""Structured scheduler events."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from . import fields
from .config import EVENT_FIELDS_ATTR


def _normalize(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def emit_event(
    logger: logging.Logger,
    event: str,
    message: str | None = None,
    *,
    level: int = logging.INFO,
    **event_fields: Any,
) -> None:
    """Log one named event with its fields attached to the record.

    The fields are available as ``record.event_fields`` for handlers and are
    merged into the formatted output by the configured formatters.
    """
    payload = {key: _normalize(value) for key, value in event_fields.items() if value is not None}
    logger.log(
        level,
        message or event,
        extra={fields.EVENT: event, EVENT_FIELDS_ATTR: payload},
    )
