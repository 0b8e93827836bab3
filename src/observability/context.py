"""Per-thread log context.

The worker binds the job key (and the CLI binds the service name) so every
record written while a job runs carries them without threading the values
through each call.
"""

from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator

_bound: ContextVar[dict[str, str] | None] = ContextVar("revisit_log_context", default=None)


def get_context() -> dict[str, str]:
    return dict(_bound.get() or {})


def bind_context(**values: object) -> None:
    """Add values to the context, stringified; ``None`` values are skipped."""
    merged = get_context()
    for key, value in values.items():
        if value is not None:
            merged[key] = str(value)
    _bound.set(merged)


def clear_context(*keys: str) -> None:
    """Drop the given keys, or everything when called without keys."""
    remaining = {key: value for key, value in get_context().items() if keys and key not in keys}
    _bound.set(remaining)


@contextmanager
def log_context(**values: object) -> Iterator[None]:
    """Bind ``values`` for the duration of the block, then restore the previous context."""
    token = _bound.set(get_context())
    bind_context(**values)
    try:
        yield
    finally:
        _bound.reset(token)
