"""Dispatch fired queue jobs to their handlers.

The review notification handler re-reads the note when its job fires and only
then decides whether, and how urgently, to notify. Lateness is measured
against the note's own ``next_review`` so a notification delayed by retries or
downtime still reports how overdue the review really is.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Protocol

from errors import StaleReference, TransientDeliveryFailure, UnknownJobKind
from notes.repository import NoteRepository
from observability import emit_event, fields
from scheduler.delay_queue import QueuedJob
from scheduler.job_payloads import REVIEW_NOTIFICATION_KIND, ReviewNotificationJob
from time_utils import ensure_utc, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TAGS: tuple[str, ...] = ("alarm_clock", "book")


@dataclass(frozen=True)
class MessageTier:
    """One row of the lateness table: a lower bound and the message it selects."""

    min_minutes_late: float
    priority: int
    title: str
    body: str


# Ordered by lateness; urgency never decreases down the table.
MESSAGE_TIERS: tuple[MessageTier, ...] = (
    MessageTier(0, 4, "Time to review: {name}", "Your note is ready for review."),
    MessageTier(10, 4, "Review waiting: {name}", "This review is {lateness} late."),
    MessageTier(60, 4, "Review overdue: {name}", "This review is {lateness} overdue."),
    MessageTier(
        1440,
        5,
        "Review overdue: {name}",
        "This review has been waiting {lateness}. Take a minute to refresh it.",
    ),
    MessageTier(
        10080,
        5,
        "Don't lose it: {name}",
        "This review has been waiting {lateness}. Your memory of it is fading.",
    ),
    MessageTier(
        43200,
        5,
        "Still there? {name}",
        "This review has been waiting {lateness}. Review it before it is forgotten.",
    ),
)


def select_message_tier(minutes_late: float) -> MessageTier:
    """Return the tier for a lateness in minutes; negative values count as on time."""
    selected = MESSAGE_TIERS[0]
    for tier in MESSAGE_TIERS:
        if minutes_late >= tier.min_minutes_late:
            selected = tier
    return selected


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def describe_lateness(minutes_late: float) -> str:
    """Render a lateness in the largest whole unit that fits."""
    minutes = int(max(minutes_late, 0))
    if minutes < 60:
        return _plural(minutes, "minute")
    if minutes < 1440:
        return _plural(minutes // 60, "hour")
    if minutes < 10080:
        return _plural(minutes // 1440, "day")
    if minutes < 43200:
        return _plural(minutes // 10080, "week")
    return _plural(minutes // 43200, "month")


@dataclass(frozen=True)
class NotificationMessage:
    """A rendered notification ready for the transport."""

    topic: str
    title: str
    body: str
    priority: int
    tags: tuple[str, ...] = field(default_factory=tuple)
    click_url: str | None = None


def minutes_late(next_review: datetime, now: datetime) -> float:
    """Return how many minutes have passed since ``next_review``, floored at zero."""
    elapsed = (ensure_utc(now) - ensure_utc(next_review)).total_seconds() / 60
    return max(elapsed, 0.0)


def build_notification_message(
    *,
    note_id: str,
    note_name: str,
    topic: str,
    late_minutes: float,
    app_base_url: str,
    tags: tuple[str, ...] | list[str] = DEFAULT_TAGS,
) -> NotificationMessage:
    """Render the notification for a note that is ``late_minutes`` overdue."""
    tier = select_message_tier(late_minutes)
    lateness = describe_lateness(late_minutes)
    return NotificationMessage(
        topic=topic,
        title=tier.title.format(name=note_name),
        body=tier.body.format(name=note_name, lateness=lateness),
        priority=tier.priority,
        tags=tuple(tags),
        click_url=f"{app_base_url.rstrip('/')}/notes/{note_id}",
    )


class NotificationTransport(Protocol):
    """Push transport contract used by the dispatch handler."""

    def send(
        self,
        topic: str,
        title: str,
        body: str,
        priority: int,
        tags: list[str],
        click_url: str | None = None,
    ) -> bool:
        """Publish a notification and return whether it was accepted."""
        ...


class ReviewNotificationHandler:
    """Handle a fired review-notification job."""

    def __init__(
        self,
        notes: NoteRepository,
        transport: NotificationTransport,
        *,
        app_base_url: str,
        tags: tuple[str, ...] | list[str] = DEFAULT_TAGS,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._notes = notes
        self._transport = transport
        self._app_base_url = app_base_url
        self._tags = tuple(tags)
        self._now_provider = now_provider or utc_now

    def __call__(self, job: QueuedJob) -> NotificationMessage:
        payload = job.decode()
        if not isinstance(payload, ReviewNotificationJob):
            raise UnknownJobKind(f"Handler cannot process kind '{job.kind}'.", {"kind": job.kind})
        return self.handle(payload.note_id)

    def handle(self, note_id: str) -> NotificationMessage:
        """Notify the note's owner if the note is still due.

        Raises:
            StaleReference: The note is gone, completed, not yet due, or its
                owner cannot be notified. Nothing is sent and the job is done.
            TransientDeliveryFailure: The transport did not accept the message.
        """
        note = self._notes.find_note_by_id(note_id)
        if note is None:
            raise StaleReference(f"Note {note_id} no longer exists.", {"note_id": note_id})
        if note.is_completed:
            raise StaleReference(f"Note {note_id} is completed.", {"note_id": note_id})
        now = ensure_utc(self._now_provider())
        if note.next_review > now:
            raise StaleReference(
                f"Note {note_id} is not due until {note.next_review.isoformat()}.",
                {"note_id": note_id},
            )
        topic = self._notes.resolve_notification_topic(note.user_id)
        if topic is None:
            raise StaleReference(
                f"Owner of note {note_id} has no notification topic.",
                {"note_id": note_id, "user_id": note.user_id},
            )

        late = minutes_late(note.next_review, now)
        message = build_notification_message(
            note_id=note.id,
            note_name=note.name,
            topic=topic,
            late_minutes=late,
            app_base_url=self._app_base_url,
            tags=self._tags,
        )
        delivered = self._transport.send(
            message.topic,
            message.title,
            message.body,
            message.priority,
            list(message.tags),
            click_url=message.click_url,
        )
        if not delivered:
            raise TransientDeliveryFailure(
                f"Notification for note {note_id} was not delivered.",
                {"note_id": note_id, "topic": topic},
            )
        emit_event(
            logger,
            fields.NOTIFICATION_SENT,
            f"Sent review notification for note {note_id}",
            **{
                fields.NOTE_ID: note_id,
                fields.MINUTES_LATE: round(late, 1),
                fields.PRIORITY: message.priority,
            },
        )
        return message


class JobDispatcher:
    """Route fired jobs to the handler registered for their kind."""

    def __init__(self, handlers: dict[str, Callable[[QueuedJob], object]] | None = None) -> None:
        self._handlers: dict[str, Callable[[QueuedJob], object]] = dict(handlers or {})

    def register(self, kind: str, handler: Callable[[QueuedJob], object]) -> None:
        """Register ``handler`` for jobs of ``kind``, replacing any existing one."""
        self._handlers[kind] = handler

    @property
    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def __call__(self, job: QueuedJob) -> object:
        handler = self._handlers.get(job.kind)
        if handler is None:
            raise UnknownJobKind(f"No handler registered for kind '{job.kind}'.", {"kind": job.kind})
        return handler(job)


def build_dispatcher(handler: ReviewNotificationHandler) -> JobDispatcher:
    """Return a dispatcher with the review notification handler registered."""
    return JobDispatcher({REVIEW_NOTIFICATION_KIND: handler})
