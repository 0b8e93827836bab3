"""Scheduling entry points for note review notifications."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from errors import ConfigurationError
from notes.repository import NoteRepository, NoteSnapshot
from observability import emit_event, fields
from scheduler.delay_queue import DelayQueue, QueuedJob
from scheduler.job_payloads import ReviewNotificationJob, review_job_key
from scheduler.reconciliation import ReconciliationPass, ReconciliationSummary
from time_utils import delay_until, ensure_utc, to_millis, utc_now

logger = logging.getLogger(__name__)


class ReviewScheduler:
    """Keep exactly one pending review notification per schedulable note.

    Every method that touches the queue store raises ``QueueUnavailable``
    when the store cannot be reached.
    """

    def __init__(
        self,
        queue: DelayQueue,
        *,
        notes: NoteRepository | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the scheduler with its queue, note store, and clock."""
        self._queue = queue
        self._notes = notes
        self._now_provider = now_provider or utc_now

    @property
    def queue(self) -> DelayQueue:
        return self._queue

    def _now(self) -> datetime:
        return ensure_utc(self._now_provider())

    def schedule(self, note_id: str, due_at: datetime) -> QueuedJob | None:
        """Schedule the note's notification for ``due_at``, replacing any pending one.

        Past due times fire immediately. When a note store is configured the
        note is re-read first: a missing or completed note has its job
        cancelled instead, and None is returned.
        """
        if self._notes is not None:
            note = self._notes.find_note_by_id(note_id)
            if note is None or note.is_completed:
                logger.info(
                    "Not scheduling note %s: %s",
                    note_id,
                    "note missing" if note is None else "note completed",
                )
                self.cancel(note_id)
                return None
        return self._enqueue(note_id, due_at)

    def schedule_note(self, note: NoteSnapshot) -> QueuedJob | None:
        """Schedule a note from a snapshot the caller already holds."""
        if note.is_completed:
            self.cancel(note.id)
            return None
        return self._enqueue(note.id, note.next_review)

    def _enqueue(self, note_id: str, due_at: datetime) -> QueuedJob:
        due_at = ensure_utc(due_at)
        delay = delay_until(due_at, self._now())
        job = self._queue.add(ReviewNotificationJob(note_id=note_id), delay=delay)
        emit_event(
            logger,
            fields.JOB_SCHEDULED,
            f"Scheduled review notification for note {note_id}",
            **{
                fields.NOTE_ID: note_id,
                fields.JOB_KEY: job.job_key,
                fields.DUE_AT: due_at,
                fields.RUN_AT: job.run_at,
                fields.DELAY_MS: to_millis(delay),
            },
        )
        return job

    def cancel(self, note_id: str) -> bool:
        """Remove the note's pending notification; return whether one existed.

        An in-flight dispatch is not interrupted.
        """
        removed = self._queue.remove(review_job_key(note_id))
        emit_event(
            logger,
            fields.JOB_CANCELLED,
            **{
                fields.NOTE_ID: note_id,
                fields.JOB_KEY: review_job_key(note_id),
                fields.OUTCOME: "removed" if removed else "absent",
            },
        )
        return removed

    def get_job(self, note_id: str) -> QueuedJob | None:
        """Return the note's stored job, if any."""
        return self._queue.get(review_job_key(note_id))

    def reconcile_on_startup(self) -> ReconciliationSummary:
        """Rebuild the queue from the note store."""
        if self._notes is None:
            raise ConfigurationError("Reconciliation requires a note repository.")
        return ReconciliationPass(self, self._notes, now_provider=self._now_provider).run()
