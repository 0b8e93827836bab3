"""Note store access used by scheduling, dispatch, and review actions."""

from __future__ import annotations

import logging
import secrets
import string
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Protocol

from sqlalchemy.orm import Session

from models import Note, ReviewHistory, ReviewStage, User
from services.database import storage_timestamp
from time_utils import ensure_aware

logger = logging.getLogger(__name__)

UPDATABLE_FIELDS = frozenset(
    {"name", "text", "link", "current_stage", "next_review", "last_review", "completed_at"}
)
_TIMESTAMP_FIELDS = frozenset({"next_review", "last_review", "completed_at"})

TOPIC_PREFIX = "review_"
TOPIC_TOKEN_LENGTH = 16
_TOPIC_ALPHABET = string.ascii_letters + string.digits + "_-"


def generate_topic() -> str:
    """Return a new unguessable topic name; knowing it is enough to subscribe."""
    token = "".join(secrets.choice(_TOPIC_ALPHABET) for _ in range(TOPIC_TOKEN_LENGTH))
    return f"{TOPIC_PREFIX}{token}"


@dataclass(frozen=True)
class NoteSnapshot:
    """Detached view of a note row with UTC timestamps."""

    id: str
    user_id: str
    name: str
    text: str
    link: str | None
    current_stage: ReviewStage
    next_review: datetime
    last_review: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime | None = None

    @property
    def is_completed(self) -> bool:
        """Return whether the note has finished every review stage."""
        return self.completed_at is not None or self.current_stage is ReviewStage.COMPLETED


def _snapshot(note: Note) -> NoteSnapshot:
    return NoteSnapshot(
        id=note.id,
        user_id=note.user_id,
        name=note.name,
        text=note.text or "",
        link=note.link,
        current_stage=ReviewStage(note.current_stage),
        next_review=ensure_aware(note.next_review),
        last_review=ensure_aware(note.last_review),
        completed_at=ensure_aware(note.completed_at),
        created_at=ensure_aware(note.created_at),
    )


class NoteRepository(Protocol):
    """Narrow note-store contract the scheduler depends on."""

    def find_note_by_id(self, note_id: str) -> NoteSnapshot | None:
        """Return the note, or None if it does not exist."""
        ...

    def find_pending_notes(self, due_before: datetime | None = None) -> list[NoteSnapshot]:
        """Return notes that are not completed, ordered by next review."""
        ...

    def update_fields(self, note_id: str, **fields: Any) -> NoteSnapshot | None:
        """Update mutable note fields and return the updated note."""
        ...

    def resolve_notification_topic(self, user_id: str) -> str | None:
        """Return the user's notification topic, if configured."""
        ...


class SqlNoteRepository:
    """SQLAlchemy-backed note repository."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self._session_factory = session_factory

    def find_note_by_id(self, note_id: str) -> NoteSnapshot | None:
        with closing(self._session_factory()) as session:
            note = session.get(Note, note_id)
            return _snapshot(note) if note is not None else None

    def find_pending_notes(self, due_before: datetime | None = None) -> list[NoteSnapshot]:
        with closing(self._session_factory()) as session:
            query = session.query(Note).filter(Note.completed_at.is_(None))
            if due_before is not None:
                query = query.filter(Note.next_review < storage_timestamp(session, due_before))
            notes = query.order_by(Note.next_review.asc(), Note.id.asc()).all()
            return [_snapshot(note) for note in notes]

    def update_fields(self, note_id: str, **fields: Any) -> NoteSnapshot | None:
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update note fields: {sorted(unknown)}")
        with closing(self._session_factory()) as session:
            note = session.get(Note, note_id)
            if note is None:
                return None
            for name, value in fields.items():
                if name in _TIMESTAMP_FIELDS and value is not None:
                    value = storage_timestamp(session, value)
                setattr(note, name, value)
            session.commit()
            session.refresh(note)
            return _snapshot(note)

    def resolve_notification_topic(self, user_id: str) -> str | None:
        with closing(self._session_factory()) as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            topic = (user.ntfy_topic or "").strip()
            return topic or None

    def ensure_notification_topic(self, user_id: str) -> str | None:
        """Return the user's topic, generating an opaque one if they have none.

        Returns None when the user does not exist.
        """
        with closing(self._session_factory()) as session:
            user = session.get(User, user_id)
            if user is None:
                return None
            existing = (user.ntfy_topic or "").strip()
            if existing:
                return existing
            topic = generate_topic()
            user.ntfy_topic = topic
            session.commit()
            logger.info("Created notification topic for user %s", user_id)
            return topic

    def find_latest_note(self, user_id: str) -> NoteSnapshot | None:
        """Return the user's most recently created note."""
        with closing(self._session_factory()) as session:
            note = (
                session.query(Note)
                .filter(Note.user_id == user_id)
                .order_by(Note.created_at.desc(), Note.id.desc())
                .first()
            )
            return _snapshot(note) if note is not None else None

    def create_user(self, *, name: str | None = None, ntfy_topic: str | None = None) -> str:
        """Insert a user and return its id."""
        with closing(self._session_factory()) as session:
            user = User(name=name, ntfy_topic=ntfy_topic)
            session.add(user)
            session.commit()
            return user.id

    def create_note(
        self,
        *,
        user_id: str,
        name: str,
        text: str,
        next_review: datetime,
        link: str | None = None,
        current_stage: ReviewStage = ReviewStage.TEN_MINUTES,
    ) -> NoteSnapshot:
        """Insert a note and return it."""
        with closing(self._session_factory()) as session:
            note = Note(
                user_id=user_id,
                name=name,
                text=text,
                link=link or None,
                current_stage=current_stage,
                next_review=storage_timestamp(session, next_review),
            )
            session.add(note)
            session.commit()
            session.refresh(note)
            return _snapshot(note)

    def delete_note(self, note_id: str) -> bool:
        """Delete a note and its review history; return whether it existed."""
        with closing(self._session_factory()) as session:
            note = session.get(Note, note_id)
            if note is None:
                return False
            session.query(ReviewHistory).filter(ReviewHistory.note_id == note_id).delete(
                synchronize_session=False
            )
            session.delete(note)
            session.commit()
            return True

    def record_review(
        self,
        note_id: str,
        *,
        action: str,
        old_stage: ReviewStage | None,
        new_stage: ReviewStage,
        reviewed_at: datetime,
    ) -> None:
        """Append a review history row."""
        with closing(self._session_factory()) as session:
            session.add(
                ReviewHistory(
                    note_id=note_id,
                    action_type=action,
                    old_stage=old_stage,
                    new_stage=new_stage,
                    created_at=storage_timestamp(session, reviewed_at),
                )
            )
            session.commit()

    def list_review_history(self, note_id: str) -> list[dict[str, Any]]:
        """Return a note's review history, oldest first."""
        with closing(self._session_factory()) as session:
            rows = (
                session.query(ReviewHistory)
                .filter(ReviewHistory.note_id == note_id)
                .order_by(ReviewHistory.id.asc())
                .all()
            )
            return [
                {
                    "action_type": row.action_type,
                    "old_stage": ReviewStage(row.old_stage) if row.old_stage else None,
                    "new_stage": ReviewStage(row.new_stage),
                    "created_at": ensure_aware(row.created_at),
                }
                for row in rows
            ]
