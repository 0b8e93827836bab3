"""Celery entry point for periodic review scheduler tasks.

Beat drives two tasks: draining due delay-queue jobs in bounded batches, for
deployments that run Celery workers instead of the in-process worker thread,
and an optional periodic reconciliation pass. The task bodies delegate to
plain functions so they can be exercised without a broker.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any

from celery import Celery

from config import settings
from scheduler.runtime import SchedulerRuntime, build_runtime

LOGGER = logging.getLogger(__name__)

PROCESS_DUE_TASK_NAME = "revisit.process_due_jobs"
RECONCILE_TASK_NAME = "revisit.reconcile"

celery_app = Celery("revisit.scheduler")
celery_app.conf.broker_url = settings.celery.broker_url
celery_app.conf.task_default_queue = settings.celery.queue_name
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"

beat_schedule = celery_app.conf.get("beat_schedule")
if beat_schedule is None:
    beat_schedule = {}
beat_schedule[PROCESS_DUE_TASK_NAME] = {
    "task": PROCESS_DUE_TASK_NAME,
    "schedule": settings.scheduler.poll_interval_seconds,
}
if settings.scheduler.reconcile_interval_seconds > 0:
    beat_schedule[RECONCILE_TASK_NAME] = {
        "task": RECONCILE_TASK_NAME,
        "schedule": settings.scheduler.reconcile_interval_seconds,
    }
celery_app.conf.beat_schedule = beat_schedule

_runtime: SchedulerRuntime | None = None


def _get_runtime() -> SchedulerRuntime:
    """Return the runtime shared by tasks in this worker process."""
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


def process_due_jobs_once(
    runtime: SchedulerRuntime,
    *,
    now: datetime | None = None,
) -> dict[str, int]:
    """Release stale claims, then process one batch of due jobs."""
    released = runtime.queue.release_stale_claims(
        older_than=timedelta(seconds=runtime.settings.scheduler.stale_claim_seconds)
    )
    result = runtime.process_due_once(now=now)
    summary = {"released": released, **result.as_dict()}
    LOGGER.info(
        "Due job scan completed: claimed=%s succeeded=%s retried=%s failed=%s",
        result.claimed,
        result.succeeded,
        result.retried,
        result.failed,
    )
    return summary


def reconcile_once(runtime: SchedulerRuntime) -> dict[str, Any]:
    """Run one reconciliation pass and return its summary."""
    return runtime.reconcile().as_dict()


@celery_app.task(name=PROCESS_DUE_TASK_NAME)
def process_due_jobs() -> dict[str, int]:
    """Celery beat job that drains due review notifications."""
    return process_due_jobs_once(_get_runtime())


@celery_app.task(name=RECONCILE_TASK_NAME)
def reconcile() -> dict[str, Any]:
    """Celery beat job that rebuilds the queue from the note store."""
    return reconcile_once(_get_runtime())
