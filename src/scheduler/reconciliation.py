"""Rebuild the delay queue from the note store.

The queue is a cache of the notes' ``next_review`` values. A pass schedules
every pending note (overdue notes fire now) and removes jobs whose note has
been deleted or completed, so running it any number of times converges on the
same queue contents.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Callable

from sqlalchemy.exc import SQLAlchemyError

from errors import SchedulerError
from notes.repository import NoteRepository
from observability import emit_event, fields
from scheduler.job_payloads import REVIEW_NOTIFICATION_KIND
from time_utils import ensure_utc, utc_now

if TYPE_CHECKING:
    from scheduler.schedule_service import ReviewScheduler

logger = logging.getLogger(__name__)

# Per-note failures from either store are counted and the pass moves on.
_STORE_ERRORS = (SchedulerError, SQLAlchemyError)


@dataclass(frozen=True)
class ReconciliationSummary:
    """Counts reported by one reconciliation pass."""

    total_pending: int = 0
    overdue_scheduled: int = 0
    future_scheduled: int = 0
    failed: int = 0
    orphans_removed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


class ReconciliationPass:
    """One pass over pending notes and stored review jobs."""

    def __init__(
        self,
        scheduler: "ReviewScheduler",
        notes: NoteRepository,
        *,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self._scheduler = scheduler
        self._notes = notes
        self._now_provider = now_provider or utc_now

    def run(self) -> ReconciliationSummary:
        """Schedule every pending note and sweep jobs for notes that no longer need one."""
        now = ensure_utc(self._now_provider())
        pending = self._notes.find_pending_notes()
        overdue = 0
        future = 0
        failed = 0
        for note in pending:
            is_overdue = note.next_review < now
            due_at = now if is_overdue else note.next_review
            try:
                job = self._scheduler.schedule(note.id, due_at)
            except _STORE_ERRORS as exc:
                failed += 1
                logger.warning(
                    "Reconciliation could not schedule note %s: %s",
                    note.id,
                    exc,
                    extra={
                        "event_fields": {
                            fields.NOTE_ID: note.id,
                            fields.ERROR_CODE: getattr(exc, "code", type(exc).__name__),
                        }
                    },
                )
                continue
            if job is None:
                continue
            if is_overdue:
                overdue += 1
            else:
                future += 1

        orphans, sweep_failures = self._sweep({note.id for note in pending})
        summary = ReconciliationSummary(
            total_pending=len(pending),
            overdue_scheduled=overdue,
            future_scheduled=future,
            failed=failed + sweep_failures,
            orphans_removed=orphans,
        )
        emit_event(
            logger,
            fields.RECONCILIATION_SUMMARY,
            (
                f"Reconciled {summary.total_pending} pending notes "
                f"({summary.overdue_scheduled} overdue, {summary.future_scheduled} future, "
                f"{summary.failed} failed, {summary.orphans_removed} orphans removed)"
            ),
            **summary.as_dict(),
        )
        return summary

    def _sweep(self, pending_ids: set[str]) -> tuple[int, int]:
        """Remove review jobs whose note is missing or completed."""
        removed = 0
        failures = 0
        for job in self._scheduler.queue.list_jobs(kind=REVIEW_NOTIFICATION_KIND):
            note_id = str(job.data.get("note_id", ""))
            if note_id in pending_ids:
                continue
            try:
                # The note may have been created after the pending query ran.
                note = self._notes.find_note_by_id(note_id) if note_id else None
                if note is not None and not note.is_completed:
                    continue
                if self._scheduler.queue.remove(job.job_key):
                    removed += 1
            except _STORE_ERRORS as exc:
                failures += 1
                logger.warning("Reconciliation could not remove job %s: %s", job.job_key, exc)
        return removed, failures
