"""Explicitly constructed scheduler runtime.

The runtime wires the delay queue, note store, dispatch handler, and worker
together and owns their lifecycle. Nothing is started at import time; callers
build a runtime, ``start()`` it, and ``shutdown()`` it when done.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import Settings, settings
from errors import ConfigurationError, SchedulerError
from notes.repository import SqlNoteRepository
from scheduler.delay_queue import DelayQueue, DelayQueueWorker, ProcessResult
from scheduler.dispatch import (
    JobDispatcher,
    NotificationTransport,
    ReviewNotificationHandler,
    build_dispatcher,
)
from scheduler.reconciliation import ReconciliationSummary
from scheduler.retry_policy import RetryPolicy
from scheduler.schedule_service import ReviewScheduler
from services.database import create_db_engine, create_session_factory, init_db
from services.ntfy import NtfyClient
from time_utils import utc_now

logger = logging.getLogger(__name__)


class SchedulerRuntime:
    """Own the scheduler components and the background worker."""

    def __init__(
        self,
        *,
        session_factory: Callable[[], Session],
        transport: NotificationTransport | None,
        app_settings: Settings | None = None,
        engine: Engine | None = None,
        owns_engine: bool = False,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        self.settings = app_settings or settings
        self.engine = engine
        self._owns_engine = owns_engine and engine is not None
        self.session_factory = session_factory
        self.transport = transport
        self._now_provider = now_provider or utc_now
        scheduler_config = self.settings.scheduler

        self.retry_policy = RetryPolicy.from_settings(scheduler_config)
        self.queue = DelayQueue(
            session_factory,
            retry_policy=self.retry_policy,
            batch_size=scheduler_config.batch_size,
            now_provider=self._now_provider,
        )
        self.notes = SqlNoteRepository(session_factory)
        self.scheduler = ReviewScheduler(
            self.queue,
            notes=self.notes,
            now_provider=self._now_provider,
        )
        self.dispatcher: JobDispatcher | None = None
        if transport is not None:
            self.dispatcher = build_dispatcher(
                ReviewNotificationHandler(
                    self.notes,
                    transport,
                    app_base_url=self.settings.app.base_url,
                    tags=self.settings.ntfy.default_tags,
                    now_provider=self._now_provider,
                )
            )
        self.worker: DelayQueueWorker | None = None
        self._reconcile_stop = threading.Event()
        self._reconcile_thread: threading.Thread | None = None
        self._started = False

    @property
    def is_running(self) -> bool:
        return self._started

    def validate(self) -> None:
        """Fail fast on settings the worker cannot run without."""
        if self.transport is None or self.dispatcher is None:
            raise ConfigurationError(
                "A notification transport is required; set ntfy.base_url (NTFY_BASE_URL).",
                {"setting": "ntfy.base_url"},
            )
        if not self.settings.app.base_url:
            raise ConfigurationError(
                "app.base_url is required for notification links.",
                {"setting": "app.base_url"},
            )

    def start(self, *, run_worker: bool = True) -> ReconciliationSummary | None:
        """Prepare the store, reconcile, and start the worker.

        Returns the startup reconciliation summary, or None when startup
        reconciliation is disabled.
        """
        if self._started:
            return None
        self.validate()
        if self.engine is not None:
            init_db(self.engine)
        scheduler_config = self.settings.scheduler
        self.queue.release_stale_claims(
            older_than=timedelta(seconds=scheduler_config.stale_claim_seconds)
        )

        summary = None
        if scheduler_config.skip_reconcile_on_startup:
            logger.info("Startup reconciliation skipped by configuration")
        else:
            summary = self.scheduler.reconcile_on_startup()

        if run_worker:
            self.worker = DelayQueueWorker(
                self.queue,
                self.dispatcher,
                poll_interval_seconds=scheduler_config.poll_interval_seconds,
                batch_size=scheduler_config.batch_size,
            )
            self.worker.start()
            if scheduler_config.reconcile_interval_seconds > 0:
                self._start_reconcile_loop(scheduler_config.reconcile_interval_seconds)
        self._started = True
        return summary

    def _start_reconcile_loop(self, interval_seconds: float) -> None:
        self._reconcile_stop.clear()
        self._reconcile_thread = threading.Thread(
            target=self._reconcile_loop,
            args=(interval_seconds,),
            name="revisit-reconcile",
            daemon=True,
        )
        self._reconcile_thread.start()

    def _reconcile_loop(self, interval_seconds: float) -> None:
        while not self._reconcile_stop.wait(interval_seconds):
            try:
                self.scheduler.reconcile_on_startup()
            except (SchedulerError, SQLAlchemyError):
                logger.exception("Periodic reconciliation failed")

    def process_due_once(self, *, now: datetime | None = None) -> ProcessResult:
        """Run one bounded batch of due jobs in the calling thread."""
        self.validate()
        return self.queue.process_due(self.dispatcher, now=now)

    def reconcile(self) -> ReconciliationSummary:
        """Run one reconciliation pass."""
        return self.scheduler.reconcile_on_startup()

    def shutdown(self, timeout: float | None = None) -> bool:
        """Stop background threads, letting an in-flight job finish.

        An engine the runtime created is disposed; connections still checked
        out by an undrained job close when it returns them. Returns whether
        the worker drained within the timeout.
        """
        timeout = self.settings.scheduler.shutdown_timeout_seconds if timeout is None else timeout
        self._reconcile_stop.set()
        if self._reconcile_thread is not None:
            self._reconcile_thread.join(timeout)
            self._reconcile_thread = None
        drained = True
        if self.worker is not None:
            drained = self.worker.stop(timeout)
            self.worker = None
        if self._owns_engine:
            self.engine.dispose()
            logger.info("Database engine disposed")
        self._started = False
        return drained

    def __enter__(self) -> "SchedulerRuntime":
        self.start()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.shutdown()


def build_runtime(
    app_settings: Settings | None = None,
    *,
    transport: NotificationTransport | None = None,
    engine: Engine | None = None,
    session_factory: Callable[[], Session] | None = None,
    now_provider: Callable[[], datetime] | None = None,
) -> SchedulerRuntime:
    """Build a runtime from settings, creating the engine and ntfy client as needed.

    Raises:
        ConfigurationError: ``ntfy.base_url`` is unset and no transport was given.
    """
    app_settings = app_settings or settings
    if transport is None:
        transport = NtfyClient.from_settings(app_settings.ntfy)
    owns_engine = False
    if session_factory is None:
        if engine is None:
            engine = create_db_engine(app_settings.database.url, echo=app_settings.database.echo)
            owns_engine = True
        session_factory = create_session_factory(engine)
    return SchedulerRuntime(
        session_factory=session_factory,
        transport=transport,
        app_settings=app_settings,
        engine=engine,
        owns_engine=owns_engine,
        now_provider=now_provider,
    )
