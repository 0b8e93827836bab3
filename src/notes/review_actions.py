"""Note lifecycle actions that keep review notifications in step.

These are the service calls behind the create, review, and delete endpoints.
The note store is the source of truth: scheduling is attempted after each
write, and a queue outage is logged rather than failing the user's action.
Startup reconciliation picks up anything missed.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from errors import QueueUnavailable
from models import ReviewStage
from notes.repository import NoteSnapshot, SqlNoteRepository
from notes.stages import REVIEW_ACTIONS, next_review_at, next_stage
from scheduler.schedule_service import ReviewScheduler
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class NoteNotFoundError(LookupError):
    """Raised when an action targets a note that does not exist."""


class NoteAccessError(PermissionError):
    """Raised when a user acts on a note they do not own."""


class ReviewActionService:
    """Create, review, and delete notes while maintaining their notifications."""

    def __init__(
        self,
        notes: SqlNoteRepository,
        scheduler: ReviewScheduler,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._notes = notes
        self._scheduler = scheduler
        self._now_provider = now_provider or utc_now

    def _now(self) -> datetime:
        return ensure_utc(self._now_provider())

    def create_note(
        self,
        *,
        user_id: str,
        name: str,
        text: str,
        link: str | None = None,
    ) -> NoteSnapshot:
        """Create a note at the first stage and schedule its first review."""
        if not name.strip():
            raise ValueError("Name is required")
        if not text.strip():
            raise ValueError("Description is required")
        stage = ReviewStage.TEN_MINUTES
        note = self._notes.create_note(
            user_id=user_id,
            name=name,
            text=text,
            link=link,
            current_stage=stage,
            next_review=next_review_at(stage, self._now()),
        )
        self._try_schedule(note)
        return note

    def review_note(
        self,
        note_id: str,
        action: str,
        *,
        user_id: str | None = None,
    ) -> NoteSnapshot:
        """Apply a review action, record it, and reschedule the note.

        Raises:
            ValueError: The action is not ``weak``, ``again``, or ``good``.
            NoteNotFoundError: The note does not exist.
            NoteAccessError: ``user_id`` is given and does not own the note.
        """
        if action not in REVIEW_ACTIONS:
            raise ValueError(f"Unsupported review action: {action}")
        note = self._get_owned(note_id, user_id)
        now = self._now()
        old_stage = note.current_stage
        new_stage = next_stage(old_stage, action)
        updated = self._notes.update_fields(
            note_id,
            current_stage=new_stage,
            next_review=next_review_at(new_stage, now),
            last_review=now,
            completed_at=now if new_stage is ReviewStage.COMPLETED else None,
        )
        if updated is None:
            raise NoteNotFoundError(f"Note {note_id} not found")
        self._notes.record_review(
            note_id,
            action=action,
            old_stage=old_stage,
            new_stage=new_stage,
            reviewed_at=now,
        )
        logger.info("Note %s reviewed (%s): %s -> %s", note_id, action, old_stage.value, new_stage.value)
        self._try_schedule(updated)
        return updated

    def delete_note(self, note_id: str, *, user_id: str | None = None) -> None:
        """Delete a note and cancel its pending notification."""
        self._get_owned(note_id, user_id)
        self._notes.delete_note(note_id)
        try:
            self._scheduler.cancel(note_id)
        except QueueUnavailable as exc:
            logger.warning("Could not cancel notification for deleted note %s: %s", note_id, exc)

    def _get_owned(self, note_id: str, user_id: str | None) -> NoteSnapshot:
        note = self._notes.find_note_by_id(note_id)
        if note is None:
            raise NoteNotFoundError(f"Note {note_id} not found")
        if user_id is not None and note.user_id != user_id:
            raise NoteAccessError(f"Note {note_id} belongs to another user")
        return note

    def _try_schedule(self, note: NoteSnapshot) -> None:
        """Schedule or cancel the note's notification, logging queue outages."""
        try:
            self._scheduler.schedule_note(note)
        except QueueUnavailable as exc:
            logger.warning("Could not schedule notification for note %s: %s", note.id, exc)
