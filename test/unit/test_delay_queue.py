"""Unit tests for the durable delay queue and its worker."""

from __future__ import annotations

import logging
import time
from contextlib import closing
from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from errors import QueueUnavailable, StaleReference, TransientDeliveryFailure, UnknownJobKind
from helpers.clock import FakeClock
from models import ScheduledJob
from scheduler.delay_queue import (
    STATUS_ACTIVE,
    STATUS_DELAYED,
    STATUS_FAILED,
    DelayQueue,
    DelayQueueWorker,
)
from scheduler.job_payloads import ReviewNotificationJob
from scheduler.retry_policy import RetryPolicy


def _queue(session_factory, clock: FakeClock, **policy) -> DelayQueue:
    """Build a queue with a deterministic clock and explicit retry policy."""
    return DelayQueue(
        session_factory,
        retry_policy=RetryPolicy(**policy),
        now_provider=clock,
    )


def _job_rows(session_factory) -> list[ScheduledJob]:
    with closing(session_factory()) as session:
        return session.query(ScheduledJob).all()


def test_add_stores_job_with_delay(sqlite_session_factory) -> None:
    """Adding a job stores one delayed row due after the delay."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock)

    job = queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(minutes=10))

    assert job.job_key == "review-n1"
    assert job.status == STATUS_DELAYED
    assert job.run_at == clock.current + timedelta(minutes=10)
    assert job.attempts_made == 0
    assert job.max_attempts == 3
    assert job.decode() == ReviewNotificationJob(note_id="n1")
    assert len(_job_rows(sqlite_session_factory)) == 1


def test_add_same_key_replaces_existing_job(sqlite_session_factory) -> None:
    """Repeated adds for one note leave a single job at the latest time."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock)

    first = queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(hours=1))
    second = queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(days=1))

    rows = _job_rows(sqlite_session_factory)
    assert len(rows) == 1
    assert second.id == first.id
    assert second.version == first.version + 1
    assert queue.get("review-n1").run_at == clock.current + timedelta(days=1)


def test_add_rejects_negative_delay(sqlite_session_factory) -> None:
    """Negative delays are a caller error."""
    queue = _queue(sqlite_session_factory, FakeClock())

    with pytest.raises(ValueError):
        queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(seconds=-1))


def test_remove_reports_whether_job_existed(sqlite_session_factory) -> None:
    """Removing is idempotent and reports whether anything was deleted."""
    queue = _queue(sqlite_session_factory, FakeClock())
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(0))

    assert queue.remove("review-n1") is True
    assert queue.remove("review-n1") is False
    assert queue.get("review-n1") is None


def test_claim_due_only_returns_due_jobs(sqlite_session_factory) -> None:
    """Claiming picks due jobs in run order and marks them active."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock)
    queue.add(ReviewNotificationJob(note_id="later"), delay=timedelta(hours=2))
    queue.add(ReviewNotificationJob(note_id="second"), delay=timedelta(minutes=5))
    queue.add(ReviewNotificationJob(note_id="first"), delay=timedelta(minutes=1))

    claimed = queue.claim_due(now=clock.current + timedelta(minutes=10))

    assert [job.job_key for job in claimed] == ["review-first", "review-second"]
    assert all(job.status == STATUS_ACTIVE for job in claimed)
    assert all(job.attempts_made == 1 for job in claimed)
    assert all(job.claim_token for job in claimed)
    assert queue.claim_due(now=clock.current + timedelta(minutes=10)) == []
    assert queue.counts() == {STATUS_DELAYED: 1, STATUS_ACTIVE: 2, STATUS_FAILED: 0}


def test_process_due_removes_job_on_success(sqlite_session_factory) -> None:
    """A successful handler consumes the job."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock)
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(0))
    seen: list[str] = []

    result = queue.process_due(lambda job: seen.append(job.decode().note_id))

    assert seen == ["n1"]
    assert result.claimed == 1
    assert result.succeeded == 1
    assert queue.get("review-n1") is None


def test_process_due_does_not_run_future_jobs(sqlite_session_factory) -> None:
    """Jobs never fire before their run time."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock)
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(minutes=10))
    seen: list[str] = []

    clock.advance(minutes=9, seconds=59)
    assert queue.process_due(lambda job: seen.append(job.job_key)).claimed == 0
    clock.advance(seconds=1)
    assert queue.process_due(lambda job: seen.append(job.job_key)).claimed == 1
    assert seen == ["review-n1"]


def test_failed_attempts_retry_with_exponential_backoff(sqlite_session_factory) -> None:
    """Two failures then a success take three runs with 2s and 4s backoff."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock, max_attempts=3, backoff_base_seconds=2.0)
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(0))
    outcomes = [TransientDeliveryFailure("down"), TransientDeliveryFailure("down"), None]
    calls: list[int] = []

    def handler(job) -> None:
        calls.append(job.attempts_made)
        outcome = outcomes.pop(0)
        if outcome is not None:
            raise outcome

    first = queue.process_due(handler)
    assert first.retried == 1
    retry = queue.get("review-n1")
    assert retry.status == STATUS_DELAYED
    assert retry.run_at == clock.current + timedelta(seconds=2)
    assert "TransientDeliveryFailure" in retry.last_error

    clock.advance(seconds=1)
    assert queue.process_due(handler).claimed == 0
    clock.advance(seconds=1)
    assert queue.process_due(handler).retried == 1
    assert queue.get("review-n1").run_at == clock.current + timedelta(seconds=4)

    clock.advance(seconds=4)
    last = queue.process_due(handler)

    assert last.succeeded == 1
    assert calls == [1, 2, 3]
    assert queue.get("review-n1") is None


def test_exhausted_job_is_retained_as_failed(sqlite_session_factory) -> None:
    """After the last attempt the job stays in the store with status failed."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock, max_attempts=2, backoff_strategy="none")
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(0))

    def handler(job) -> None:
        raise TransientDeliveryFailure("still down")

    assert queue.process_due(handler).retried == 1
    assert queue.process_due(handler).failed == 1

    job = queue.get("review-n1")
    assert job.status == STATUS_FAILED
    assert job.attempts_made == 2
    assert queue.process_due(handler).claimed == 0
    assert queue.counts()[STATUS_FAILED] == 1


def test_non_retryable_error_fails_immediately(sqlite_session_factory) -> None:
    """Errors flagged as not retryable skip the remaining attempts."""
    queue = _queue(sqlite_session_factory, FakeClock())
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(0))

    def handler(job) -> None:
        raise UnknownJobKind("no handler")

    result = queue.process_due(handler)

    assert result.failed == 1
    assert queue.get("review-n1").attempts_made == 1


def test_stale_reference_is_consumed_without_retry(sqlite_session_factory, caplog) -> None:
    """Jobs whose note no longer needs notifying are dropped, not retried."""
    queue = _queue(sqlite_session_factory, FakeClock())
    queue.add(ReviewNotificationJob(note_id="gone"), delay=timedelta(0))

    def handler(job) -> None:
        raise StaleReference("Note gone no longer exists.")

    with caplog.at_level(logging.INFO):
        result = queue.process_due(handler)

    assert result.skipped == 1
    assert queue.get("review-gone") is None
    assert any(getattr(record, "event", None) == "job_skipped" for record in caplog.records)


def test_reschedule_while_firing_keeps_new_schedule(sqlite_session_factory) -> None:
    """A schedule made during dispatch survives the finishing handler."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock)
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(0))

    def handler(job) -> None:
        queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(days=1))

    result = queue.process_due(handler)

    assert result.superseded == 1
    job = queue.get("review-n1")
    assert job is not None
    assert job.status == STATUS_DELAYED
    assert job.run_at == clock.current + timedelta(days=1)


def test_failure_after_reschedule_leaves_new_schedule(sqlite_session_factory) -> None:
    """A failing handler does not overwrite a schedule made while it ran."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock)
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(0))

    def handler(job) -> None:
        queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(hours=3))
        raise TransientDeliveryFailure("down")

    result = queue.process_due(handler)

    assert result.superseded == 1
    job = queue.get("review-n1")
    assert job.attempts_made == 0
    assert job.last_error is None
    assert job.run_at == clock.current + timedelta(hours=3)


def test_cancel_while_firing_does_not_interrupt(sqlite_session_factory) -> None:
    """Removing a job mid-dispatch lets the handler finish and leaves no job."""
    queue = _queue(sqlite_session_factory, FakeClock())
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(0))
    finished: list[bool] = []

    def handler(job) -> None:
        queue.remove(job.job_key)
        finished.append(True)

    result = queue.process_due(handler)

    assert finished == [True]
    assert result.superseded == 1
    assert queue.get("review-n1") is None


def test_release_stale_claims_returns_jobs_to_delayed(sqlite_session_factory) -> None:
    """Active jobs left by a crashed worker become claimable again."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock)
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(0))
    queue.claim_due()

    assert queue.release_stale_claims(older_than=timedelta(minutes=10)) == 0
    clock.advance(minutes=11)
    assert queue.release_stale_claims(older_than=timedelta(minutes=10)) == 1

    reclaimed = queue.claim_due()
    assert [job.job_key for job in reclaimed] == ["review-n1"]
    assert reclaimed[0].attempts_made == 2


def test_list_jobs_filters_by_status(sqlite_session_factory) -> None:
    """Listing returns jobs in run order, optionally filtered."""
    clock = FakeClock()
    queue = _queue(sqlite_session_factory, clock)
    queue.add(ReviewNotificationJob(note_id="b"), delay=timedelta(minutes=2))
    queue.add(ReviewNotificationJob(note_id="a"), delay=timedelta(minutes=1))

    assert [job.job_key for job in queue.list_jobs()] == ["review-a", "review-b"]
    assert queue.list_jobs(status=STATUS_FAILED) == []
    assert len(queue.list_jobs(limit=1)) == 1


def test_store_errors_surface_as_queue_unavailable(sqlite_session_factory) -> None:
    """Database failures are reported as QueueUnavailable."""

    class BrokenSession:
        def query(self, *args, **kwargs):
            raise OperationalError("SELECT 1", {}, Exception("database is locked"))

        def rollback(self) -> None:
            pass

        def close(self) -> None:
            pass

    queue = DelayQueue(lambda: BrokenSession(), retry_policy=RetryPolicy())

    with pytest.raises(QueueUnavailable) as excinfo:
        queue.remove("review-n1")
    assert excinfo.value.code == "queue_unavailable"
    assert excinfo.value.retryable is True


def test_worker_processes_due_jobs_and_drains_on_stop(sqlite_session_factory) -> None:
    """The background worker fires due jobs and stops cleanly."""
    queue = DelayQueue(sqlite_session_factory, retry_policy=RetryPolicy())
    handled: list[str] = []
    worker = DelayQueueWorker(
        queue,
        lambda job: handled.append(job.job_key),
        poll_interval_seconds=0.05,
    )
    queue.add(ReviewNotificationJob(note_id="n1"), delay=timedelta(0))

    worker.start()
    try:
        deadline = time.monotonic() + 5
        while not handled and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        stopped = worker.stop(timeout=5)

    assert stopped is True
    assert worker.is_running is False
    assert handled == ["review-n1"]
    assert queue.get("review-n1") is None
