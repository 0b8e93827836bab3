"""Unit tests for queue reconciliation against the note store."""

from __future__ import annotations

import logging
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from errors import QueueUnavailable
from helpers.clock import FakeClock
from models import ReviewStage
from notes.repository import SqlNoteRepository
from scheduler.delay_queue import DelayQueue
from scheduler.job_payloads import ReviewNotificationJob
from scheduler.reconciliation import ReconciliationPass, ReconciliationSummary
from scheduler.retry_policy import RetryPolicy
from scheduler.schedule_service import ReviewScheduler


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def notes(sqlite_session_factory) -> SqlNoteRepository:
    return SqlNoteRepository(sqlite_session_factory)


@pytest.fixture()
def queue(sqlite_session_factory, clock) -> DelayQueue:
    return DelayQueue(sqlite_session_factory, retry_policy=RetryPolicy(), now_provider=clock)


@pytest.fixture()
def scheduler(queue, notes, clock) -> ReviewScheduler:
    return ReviewScheduler(queue, notes=notes, now_provider=clock)


@pytest.fixture()
def user_id(notes) -> str:
    return notes.create_user(name="Ada", ntfy_topic="ada")


def _create(notes, user_id, name, next_review):
    return notes.create_note(user_id=user_id, name=name, text="body", next_review=next_review)


def _snapshot_queue(queue: DelayQueue) -> list[tuple[str, object]]:
    return sorted((job.job_key, job.run_at) for job in queue.list_jobs())


def test_reconcile_schedules_overdue_and_future_notes(scheduler, queue, notes, user_id, clock) -> None:
    """Overdue notes fire now and future notes keep their review time."""
    overdue = _create(notes, user_id, "old", clock.current - timedelta(days=2))
    future = _create(notes, user_id, "new", clock.current + timedelta(days=3))

    summary = scheduler.reconcile_on_startup()

    assert summary == ReconciliationSummary(
        total_pending=2,
        overdue_scheduled=1,
        future_scheduled=1,
        failed=0,
        orphans_removed=0,
    )
    assert queue.get(f"review-{overdue.id}").run_at == clock.current
    assert queue.get(f"review-{future.id}").run_at == clock.current + timedelta(days=3)


def test_reconcile_skips_completed_notes(scheduler, queue, notes, user_id, clock) -> None:
    """Completed notes are not pending and get no job."""
    done = _create(notes, user_id, "done", clock.current + timedelta(days=1))
    notes.update_fields(done.id, current_stage=ReviewStage.COMPLETED, completed_at=clock.current)

    summary = scheduler.reconcile_on_startup()

    assert summary.total_pending == 0
    assert queue.list_jobs() == []


def test_reconcile_removes_orphaned_jobs(scheduler, queue, notes, user_id, clock) -> None:
    """Jobs for deleted or completed notes are swept."""
    kept = _create(notes, user_id, "kept", clock.current + timedelta(hours=1))
    done = _create(notes, user_id, "done", clock.current + timedelta(hours=1))
    queue.add(ReviewNotificationJob(note_id="deleted-note"), delay=timedelta(hours=1))
    queue.add(ReviewNotificationJob(note_id=done.id), delay=timedelta(hours=1))
    notes.update_fields(done.id, current_stage=ReviewStage.COMPLETED, completed_at=clock.current)

    summary = scheduler.reconcile_on_startup()

    assert summary.orphans_removed == 2
    assert [job.job_key for job in queue.list_jobs()] == [f"review-{kept.id}"]


def test_reconcile_is_idempotent(scheduler, queue, notes, user_id, clock) -> None:
    """Running reconciliation twice yields the same queue contents."""
    _create(notes, user_id, "a", clock.current - timedelta(minutes=5))
    _create(notes, user_id, "b", clock.current + timedelta(days=1))
    _create(notes, user_id, "c", clock.current + timedelta(days=30))

    scheduler.reconcile_on_startup()
    first = _snapshot_queue(queue)
    scheduler.reconcile_on_startup()

    assert _snapshot_queue(queue) == first
    assert len(first) == 3


def test_reconcile_converges_from_arbitrary_queue(scheduler, queue, notes, user_id, clock) -> None:
    """Whatever the queue held before, it ends with one job per pending note."""
    a = _create(notes, user_id, "a", clock.current + timedelta(hours=2))
    b = _create(notes, user_id, "b", clock.current - timedelta(hours=2))
    queue.add(ReviewNotificationJob(note_id=a.id), delay=timedelta(days=99))
    queue.add(ReviewNotificationJob(note_id="stale"), delay=timedelta(0))

    scheduler.reconcile_on_startup()

    assert _snapshot_queue(queue) == sorted(
        [
            (f"review-{a.id}", clock.current + timedelta(hours=2)),
            (f"review-{b.id}", clock.current),
        ]
    )


def test_reconcile_counts_failures_and_continues(queue, notes, user_id, clock, caplog) -> None:
    """A note that cannot be scheduled is counted and the pass carries on."""
    broken = _create(notes, user_id, "broken", clock.current + timedelta(hours=1))
    healthy = _create(notes, user_id, "healthy", clock.current + timedelta(hours=2))

    class FlakyScheduler(ReviewScheduler):
        def schedule(self, note_id, due_at):
            if note_id == broken.id:
                raise QueueUnavailable("store offline")
            return super().schedule(note_id, due_at)

    scheduler = FlakyScheduler(queue, notes=notes, now_provider=clock)

    with caplog.at_level(logging.INFO):
        summary = ReconciliationPass(scheduler, notes, now_provider=clock).run()

    assert summary.failed == 1
    assert summary.future_scheduled == 1
    assert queue.get(f"review-{healthy.id}") is not None
    events = [r for r in caplog.records if getattr(r, "event", None) == "reconciliation_summary"]
    assert events[0].event_fields["failed"] == 1


class _FailingReads(SqlNoteRepository):
    """Note repository whose lookups fail for selected note ids."""

    def __init__(self, session_factory, failing_ids) -> None:
        super().__init__(session_factory)
        self.failing_ids = set(failing_ids)

    def find_note_by_id(self, note_id):
        if note_id in self.failing_ids:
            raise OperationalError("SELECT notes", {}, Exception("connection reset"))
        return super().find_note_by_id(note_id)


def test_reconcile_continues_after_note_store_error(
    sqlite_session_factory, queue, notes, user_id, clock
) -> None:
    """A failed note read counts as one failure and later notes are still scheduled."""
    broken = _create(notes, user_id, "broken", clock.current + timedelta(hours=1))
    healthy = _create(notes, user_id, "healthy", clock.current + timedelta(hours=2))
    failing = _FailingReads(sqlite_session_factory, {broken.id})
    scheduler = ReviewScheduler(queue, notes=failing, now_provider=clock)

    summary = ReconciliationPass(scheduler, failing, now_provider=clock).run()

    assert summary.failed == 1
    assert summary.future_scheduled == 1
    assert queue.get(f"review-{healthy.id}") is not None
    assert queue.get(f"review-{broken.id}") is None


def test_sweep_counts_note_store_errors(sqlite_session_factory, queue, clock) -> None:
    """A sweep lookup that fails leaves the job in place and is counted."""
    queue.add(ReviewNotificationJob(note_id="unreadable"), delay=timedelta(hours=1))
    queue.add(ReviewNotificationJob(note_id="deleted"), delay=timedelta(hours=1))
    failing = _FailingReads(sqlite_session_factory, {"unreadable"})
    scheduler = ReviewScheduler(queue, notes=failing, now_provider=clock)

    summary = ReconciliationPass(scheduler, failing, now_provider=clock).run()

    assert summary.failed == 1
    assert summary.orphans_removed == 1
    assert [job.job_key for job in queue.list_jobs()] == ["review-unreadable"]
