"""Durable delay queue backed by the ``scheduled_jobs`` table.

Jobs are keyed: adding a job whose key already exists replaces the stored
row in one transaction, so a key never has more than one live job. The
worker claims due rows by flipping ``delayed`` to ``active`` with a guarded
UPDATE and finishes them through the claim token it was handed. A row
replaced or removed while its handler runs is therefore left alone when the
handler returns.

Failed handlers are retried with the job's backoff policy. Jobs that exhaust
their attempts stay in the table with status ``failed`` for inspection.
"""

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from errors import QueueUnavailable, StaleReference
from models import ScheduledJob
from observability import emit_event, fields, log_context
from scheduler.job_payloads import JobPayload, decode_payload, encode_payload
from scheduler.retry_policy import (
    RetryPolicy,
    compute_retry_at,
    resolve_retry_policy,
    should_retry,
)
from services.database import storage_timestamp
from time_utils import ensure_aware, ensure_utc, to_millis, utc_now

logger = logging.getLogger(__name__)

STATUS_DELAYED = "delayed"
STATUS_ACTIVE = "active"
STATUS_FAILED = "failed"


@dataclass(frozen=True)
class QueuedJob:
    """Snapshot of one stored job."""

    id: int
    job_key: str
    kind: str
    data: dict[str, Any]
    status: str
    run_at: datetime
    attempts_made: int
    max_attempts: int
    backoff_strategy: str
    backoff_base_seconds: float
    version: int
    claim_token: str | None = None
    last_error: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def decode(self) -> JobPayload:
        """Return the typed payload for this job."""
        return decode_payload(self.kind, self.data)

    def delay(self, now: datetime) -> timedelta:
        """Return the remaining delay before the job is due."""
        remaining = self.run_at - ensure_utc(now)
        return max(remaining, timedelta(0))


@dataclass
class ProcessResult:
    """Counters for one pass over due jobs."""

    claimed: int = 0
    succeeded: int = 0
    skipped: int = 0
    retried: int = 0
    failed: int = 0
    superseded: int = 0
    outcomes: dict[str, str] = field(default_factory=dict)

    def as_dict(self) -> dict[str, int]:
        """Return the counters as a plain mapping."""
        return {
            "claimed": self.claimed,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "retried": self.retried,
            "failed": self.failed,
            "superseded": self.superseded,
        }


JobHandler = Callable[[QueuedJob], object]


def _snapshot(job: ScheduledJob) -> QueuedJob:
    """Copy an ORM row into an immutable snapshot with UTC timestamps."""
    return QueuedJob(
        id=job.id,
        job_key=job.job_key,
        kind=job.kind,
        data=dict(job.payload or {}),
        status=job.status,
        run_at=ensure_aware(job.run_at),
        attempts_made=int(job.attempts_made or 0),
        max_attempts=int(job.max_attempts),
        backoff_strategy=job.backoff_strategy,
        backoff_base_seconds=int(job.backoff_base_ms or 0) / 1000,
        version=int(job.version or 1),
        claim_token=job.claim_token,
        last_error=job.last_error,
        created_at=ensure_aware(job.created_at),
        updated_at=ensure_aware(job.updated_at),
    )


class DelayQueue:
    """Keyed, persistent, time-ordered job store."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        retry_policy: RetryPolicy | None = None,
        batch_size: int = 50,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize the queue with persistence, retry policy, and clock."""
        self._session_factory = session_factory
        self._retry_policy = resolve_retry_policy(retry_policy)
        self._batch_size = batch_size
        self._now_provider = now_provider or utc_now

    @property
    def retry_policy(self) -> RetryPolicy:
        return self._retry_policy

    def _now(self) -> datetime:
        return ensure_utc(self._now_provider())

    @contextmanager
    def _store_session(self, operation: str) -> Iterator[Session]:
        """Open a session for one store operation, committing on success.

        Store failures surface as :class:`QueueUnavailable`.
        """
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            raise QueueUnavailable(
                f"Delay queue {operation} failed: {exc}",
                {"operation": operation},
            ) from exc
        finally:
            session.close()

    def add(self, payload: JobPayload, *, delay: timedelta) -> QueuedJob:
        """Store a job to run after ``delay``, replacing any job with the same key."""
        if delay < timedelta(0):
            raise ValueError("delay must be non-negative.")
        for attempt in (1, 2):
            try:
                return self._upsert(payload, delay)
            except QueueUnavailable as exc:
                # Two writers inserting the same new key: the loser retries as an update.
                if attempt == 1 and isinstance(exc.__cause__, IntegrityError):
                    continue
                raise
        raise AssertionError("unreachable")

    def _upsert(self, payload: JobPayload, delay: timedelta) -> QueuedJob:
        policy = self._retry_policy
        key = payload.job_key
        with self._store_session("add") as session:
            now = self._now()
            job = (
                session.query(ScheduledJob)
                .filter(ScheduledJob.job_key == key)
                .with_for_update()
                .first()
            )
            if job is None:
                job = ScheduledJob(
                    job_key=key,
                    version=1,
                    created_at=storage_timestamp(session, now),
                )
                session.add(job)
            else:
                job.version = int(job.version or 0) + 1
            job.kind = payload.kind
            job.payload = encode_payload(payload)
            job.status = STATUS_DELAYED
            job.run_at = storage_timestamp(session, now + delay)
            job.attempts_made = 0
            job.max_attempts = policy.max_attempts
            job.backoff_strategy = policy.backoff_strategy
            job.backoff_base_ms = int(round(policy.backoff_base_seconds * 1000))
            job.claim_token = None
            job.claimed_at = None
            job.last_error = None
            job.finished_at = None
            job.updated_at = storage_timestamp(session, now)
            session.flush()
            return _snapshot(job)

    def remove(self, job_key: str) -> bool:
        """Delete the job stored under ``job_key``; return whether one existed."""
        with self._store_session("remove") as session:
            deleted = (
                session.query(ScheduledJob)
                .filter(ScheduledJob.job_key == job_key)
                .delete(synchronize_session=False)
            )
        return bool(deleted)

    def get(self, job_key: str) -> QueuedJob | None:
        """Return the job stored under ``job_key``, if any."""
        with self._store_session("get") as session:
            job = session.query(ScheduledJob).filter(ScheduledJob.job_key == job_key).first()
            return _snapshot(job) if job is not None else None

    def list_jobs(
        self,
        *,
        status: str | None = None,
        kind: str | None = None,
        limit: int | None = None,
    ) -> list[QueuedJob]:
        """Return stored jobs ordered by run time."""
        with self._store_session("list") as session:
            query = session.query(ScheduledJob)
            if status is not None:
                query = query.filter(ScheduledJob.status == status)
            if kind is not None:
                query = query.filter(ScheduledJob.kind == kind)
            query = query.order_by(ScheduledJob.run_at.asc(), ScheduledJob.id.asc())
            if limit is not None:
                query = query.limit(limit)
            return [_snapshot(job) for job in query.all()]

    def counts(self) -> dict[str, int]:
        """Return the number of stored jobs per status."""
        with self._store_session("count") as session:
            rows = (
                session.query(ScheduledJob.status, func.count(ScheduledJob.id))
                .group_by(ScheduledJob.status)
                .all()
            )
        counts = {STATUS_DELAYED: 0, STATUS_ACTIVE: 0, STATUS_FAILED: 0}
        counts.update({str(status): int(total) for status, total in rows})
        return counts

    def claim_due(self, *, now: datetime | None = None, limit: int | None = None) -> list[QueuedJob]:
        """Claim delayed jobs whose run time has passed.

        Each claim increments ``attempts_made`` and hands out a fresh claim
        token. A row replaced after it was selected keeps its new version and
        is skipped.
        """
        now = ensure_utc(now) if now is not None else self._now()
        limit = limit or self._batch_size
        claimed: list[QueuedJob] = []
        with self._store_session("claim") as session:
            candidates = (
                session.query(ScheduledJob)
                .filter(ScheduledJob.status == STATUS_DELAYED)
                .filter(ScheduledJob.run_at <= storage_timestamp(session, now))
                .order_by(ScheduledJob.run_at.asc(), ScheduledJob.id.asc())
                .limit(limit)
                .all()
            )
            for job in candidates:
                snapshot = _snapshot(job)
                token = uuid4().hex
                updated = (
                    session.query(ScheduledJob)
                    .filter(ScheduledJob.id == snapshot.id)
                    .filter(ScheduledJob.version == snapshot.version)
                    .filter(ScheduledJob.status == STATUS_DELAYED)
                    .update(
                        {
                            ScheduledJob.status: STATUS_ACTIVE,
                            ScheduledJob.claim_token: token,
                            ScheduledJob.claimed_at: storage_timestamp(session, now),
                            ScheduledJob.attempts_made: ScheduledJob.attempts_made + 1,
                            ScheduledJob.updated_at: storage_timestamp(session, now),
                        },
                        synchronize_session=False,
                    )
                )
                if not updated:
                    continue
                claimed.append(
                    replace(
                        snapshot,
                        status=STATUS_ACTIVE,
                        claim_token=token,
                        attempts_made=snapshot.attempts_made + 1,
                    )
                )
        return claimed

    def complete(self, job: QueuedJob) -> bool:
        """Remove a finished job if it still holds the claim; return whether it did."""
        with self._store_session("complete") as session:
            deleted = (
                session.query(ScheduledJob)
                .filter(ScheduledJob.id == job.id)
                .filter(ScheduledJob.claim_token == job.claim_token)
                .delete(synchronize_session=False)
            )
        return bool(deleted)

    def fail(self, job: QueuedJob, error: BaseException, *, retryable: bool = True) -> QueuedJob | None:
        """Record a failed attempt, scheduling a retry or retaining the job as failed.

        Returns the updated snapshot, or ``None`` when the job was replaced or
        removed while it ran.
        """
        with self._store_session("fail") as session:
            now = self._now()
            row = (
                session.query(ScheduledJob)
                .filter(ScheduledJob.id == job.id)
                .filter(ScheduledJob.claim_token == job.claim_token)
                .with_for_update()
                .first()
            )
            if row is None:
                return None
            row.last_error = f"{type(error).__name__}: {error}"
            row.claim_token = None
            row.claimed_at = None
            row.updated_at = storage_timestamp(session, now)
            attempts = int(row.attempts_made or 0)
            if retryable and should_retry(attempts, int(row.max_attempts)):
                retry_at = compute_retry_at(
                    now,
                    attempts,
                    backoff_strategy=row.backoff_strategy,
                    backoff_base_seconds=int(row.backoff_base_ms or 0) / 1000,
                )
                row.status = STATUS_DELAYED
                row.run_at = storage_timestamp(session, retry_at)
            else:
                row.status = STATUS_FAILED
                row.finished_at = storage_timestamp(session, now)
            session.flush()
            return _snapshot(row)

    def release_stale_claims(self, *, older_than: timedelta) -> int:
        """Return ``active`` jobs claimed before the cutoff to ``delayed``.

        Jobs left active by a crashed worker are run again; delivery is at
        least once.
        """
        with self._store_session("release") as session:
            now = self._now()
            cutoff = storage_timestamp(session, now - older_than)
            released = (
                session.query(ScheduledJob)
                .filter(ScheduledJob.status == STATUS_ACTIVE)
                .filter(ScheduledJob.claimed_at <= cutoff)
                .update(
                    {
                        ScheduledJob.status: STATUS_DELAYED,
                        ScheduledJob.claim_token: None,
                        ScheduledJob.claimed_at: None,
                        ScheduledJob.updated_at: storage_timestamp(session, now),
                    },
                    synchronize_session=False,
                )
            )
        if released:
            emit_event(
                logger,
                fields.JOB_CLAIMS_RELEASED,
                f"Released {released} stale job claims",
                level=logging.WARNING,
                released=released,
            )
        return int(released)

    def process_due(
        self,
        handler: JobHandler,
        *,
        now: datetime | None = None,
        limit: int | None = None,
    ) -> ProcessResult:
        """Claim due jobs and run ``handler`` on each, sequentially."""
        result = ProcessResult()
        for job in self.claim_due(now=now, limit=limit):
            result.claimed += 1
            outcome = self._run_job(job, handler)
            result.outcomes[job.job_key] = outcome
            if outcome == "succeeded":
                result.succeeded += 1
            elif outcome == "skipped":
                result.skipped += 1
            elif outcome == "retry_scheduled":
                result.retried += 1
            elif outcome == "failed":
                result.failed += 1
            else:
                result.superseded += 1
        return result

    def _run_job(self, job: QueuedJob, handler: JobHandler) -> str:
        """Run one claimed job and record its outcome."""
        common = {
            fields.JOB_KEY: job.job_key,
            fields.JOB_KIND: job.kind,
            fields.ATTEMPT: job.attempts_made,
            fields.MAX_ATTEMPTS: job.max_attempts,
        }
        started = time.monotonic()
        with log_context(job_key=job.job_key):
            emit_event(logger, fields.JOB_FIRED, **common, **{fields.RUN_AT: job.run_at})
            try:
                handler(job)
            except StaleReference as exc:
                removed = self.complete(job)
                emit_event(
                    logger,
                    fields.JOB_SKIPPED,
                    str(exc),
                    **common,
                    **{fields.OUTCOME: "skipped"},
                )
                return "skipped" if removed else "superseded"
            except Exception as exc:
                retryable = bool(getattr(exc, "retryable", True))
                updated = self.fail(job, exc, retryable=retryable)
                duration_ms = to_millis(timedelta(seconds=time.monotonic() - started))
                if updated is None:
                    logger.warning("Job %s failed after being replaced: %s", job.job_key, exc)
                    return "superseded"
                if updated.status == STATUS_DELAYED:
                    emit_event(
                        logger,
                        fields.JOB_RETRY_SCHEDULED,
                        f"Job {job.job_key} failed; retrying",
                        level=logging.WARNING,
                        **common,
                        **{
                            fields.ERROR: str(exc),
                            fields.ERROR_CODE: getattr(exc, "code", type(exc).__name__),
                            fields.RUN_AT: updated.run_at,
                            fields.DURATION_MS: duration_ms,
                        },
                    )
                    return "retry_scheduled"
                emit_event(
                    logger,
                    fields.JOB_FAILED,
                    f"Job {job.job_key} failed permanently",
                    level=logging.ERROR,
                    **common,
                    **{
                        fields.ERROR: str(exc),
                        fields.ERROR_CODE: getattr(exc, "code", type(exc).__name__),
                        fields.DURATION_MS: duration_ms,
                    },
                )
                return "failed"
            removed = self.complete(job)
            emit_event(
                logger,
                fields.JOB_SUCCEEDED,
                **common,
                **{
                    fields.OUTCOME: "succeeded" if removed else "superseded",
                    fields.DURATION_MS: to_millis(timedelta(seconds=time.monotonic() - started)),
                },
            )
            return "succeeded" if removed else "superseded"


class DelayQueueWorker:
    """Background thread that processes due jobs one at a time."""

    def __init__(
        self,
        queue: DelayQueue,
        handler: JobHandler,
        *,
        poll_interval_seconds: float = 1.0,
        batch_size: int | None = None,
        name: str = "revisit-delay-queue",
    ) -> None:
        self._queue = queue
        self._handler = handler
        self._poll_interval = poll_interval_seconds
        self._batch_size = batch_size
        self._name = name
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the worker thread if it is not already running."""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
        self._thread.start()
        logger.info("Delay queue worker started (poll every %.2fs)", self._poll_interval)

    def stop(self, timeout: float | None = None) -> bool:
        """Stop polling and wait for the in-flight job to finish.

        Returns whether the thread exited within ``timeout``.
        """
        self._stop_event.set()
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        stopped = not thread.is_alive()
        if stopped:
            self._thread = None
            logger.info("Delay queue worker stopped")
        else:
            logger.warning("Delay queue worker still draining after %.1fs", timeout or 0.0)
        return stopped

    def _run(self) -> None:
        while not self._stop_event.is_set():
            claimed = 0
            try:
                claimed = self._queue.process_due(self._handler, limit=self._batch_size).claimed
            except QueueUnavailable:
                logger.exception("Delay queue unavailable; retrying after poll interval")
            if claimed == 0:
                self._stop_event.wait(self._poll_interval)
