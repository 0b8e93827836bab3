"""Typed payloads carried by delay queue jobs.

Each payload declares a ``kind`` tag. The queue stores the tag next to the
JSON body and decodes it back through :data:`PAYLOAD_TYPES`, so new kinds only
need a model here and a handler in the dispatcher.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import UnknownJobKind

REVIEW_NOTIFICATION_KIND = "review-notification"


def review_job_key(note_id: str) -> str:
    """Return the deterministic queue key for a note's review notification."""
    return f"review-{note_id}"


class JobPayload(BaseModel):
    """Base class for queued job payloads."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    kind: str

    @property
    def job_key(self) -> str:
        """Return the queue key that deduplicates this payload."""
        raise NotImplementedError


class ReviewNotificationJob(JobPayload):
    """Notify a note's owner that the note is due for review."""

    kind: Literal["review-notification"] = REVIEW_NOTIFICATION_KIND
    note_id: str = Field(min_length=1)

    @property
    def job_key(self) -> str:
        return review_job_key(self.note_id)


PAYLOAD_TYPES: dict[str, type[JobPayload]] = {
    REVIEW_NOTIFICATION_KIND: ReviewNotificationJob,
}


def encode_payload(payload: JobPayload) -> dict[str, Any]:
    """Serialize a payload into its stored JSON form."""
    return payload.model_dump(mode="json")


def decode_payload(kind: str, data: dict[str, Any]) -> JobPayload:
    """Rebuild a typed payload from its stored kind and JSON body."""
    model = PAYLOAD_TYPES.get(kind)
    if model is None:
        raise UnknownJobKind(f"No payload type registered for kind '{kind}'.", {"kind": kind})
    try:
        return model.model_validate({**data, "kind": kind})
    except ValidationError as exc:
        raise UnknownJobKind(
            f"Stored payload does not match kind '{kind}'.",
            {"kind": kind, "errors": exc.errors()},
        ) from exc
