"""Command line entry point for the review notification scheduler."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
import threading
from typing import Sequence

from config import settings
from errors import SchedulerError
from observability import configure_logging
from scheduler.delay_queue import STATUS_DELAYED, STATUS_FAILED
from scheduler.dispatch import build_notification_message
from scheduler.runtime import SchedulerRuntime, build_runtime
from services.database import create_db_engine, create_session_factory, init_db
from services.ntfy import NtfyClient

logger = logging.getLogger(__name__)


def _offline_runtime() -> SchedulerRuntime:
    """Build a runtime for store maintenance commands that never send notifications."""
    engine = create_db_engine()
    init_db(engine)
    return SchedulerRuntime(
        session_factory=create_session_factory(engine),
        transport=None,
        engine=engine,
        owns_engine=True,
    )


def run_service(args: argparse.Namespace) -> int:
    """Start the runtime and block until interrupted."""
    if args.skip_reconcile:
        settings.scheduler.skip_reconcile_on_startup = True
    runtime = build_runtime()
    stop = threading.Event()

    def _handle_signal(signum, frame) -> None:
        logger.info("Received signal %s, shutting down", signum)
        stop.set()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    summary = runtime.start()
    if summary is not None:
        logger.info("Startup reconciliation: %s", summary.as_dict())
    logger.info("Review scheduler running")
    try:
        stop.wait()
    finally:
        drained = runtime.shutdown()
        if not drained:
            logger.warning("Shutdown timed out with a job still in flight")
    return 0


def run_reconcile(args: argparse.Namespace) -> int:
    """Run one reconciliation pass and print its summary."""
    runtime = _offline_runtime()
    try:
        summary = runtime.reconcile()
    finally:
        runtime.shutdown()
    print(json.dumps(summary.as_dict(), indent=2))
    return 0 if summary.failed == 0 else 1


def run_status(args: argparse.Namespace) -> int:
    """Print queue counts and the next delayed jobs."""
    runtime = _offline_runtime()
    try:
        counts = runtime.queue.counts()
        delayed = runtime.queue.list_jobs(status=STATUS_DELAYED, limit=args.limit)
        failed = runtime.queue.list_jobs(status=STATUS_FAILED, limit=args.limit)
    finally:
        runtime.shutdown()
    report = {
        "counts": counts,
        "delayed": [
            {"job_key": job.job_key, "run_at": job.run_at.isoformat(), "data": job.data}
            for job in delayed
        ],
        "failed": [
            {
                "job_key": job.job_key,
                "attempts_made": job.attempts_made,
                "last_error": job.last_error,
            }
            for job in failed
        ],
    }
    print(json.dumps(report, indent=2))
    return 0


def run_topic(args: argparse.Namespace) -> int:
    """Print the user's notification topic, creating one if they have none."""
    runtime = _offline_runtime()
    try:
        topic = runtime.notes.ensure_notification_topic(args.user_id)
    finally:
        runtime.shutdown()
    if topic is None:
        logger.error("User %s does not exist", args.user_id)
        return 1
    report = {"user_id": args.user_id, "server": settings.ntfy.base_url, "topic": topic}
    print(json.dumps(report, indent=2))
    return 0


def run_test_notify(args: argparse.Namespace) -> int:
    """Send a test notification for the user's most recent note.

    Exits 1 when the user has no topic or notes, or when the transport
    does not accept the message.
    """
    transport = NtfyClient.from_settings(settings.ntfy)
    runtime = _offline_runtime()
    try:
        topic = runtime.notes.resolve_notification_topic(args.user_id)
        note = runtime.notes.find_latest_note(args.user_id)
    finally:
        runtime.shutdown()
    if topic is None:
        logger.error("User %s has no notification topic; run `topic` first", args.user_id)
        return 1
    if note is None:
        logger.error("User %s has no notes to send a test notification for", args.user_id)
        return 1

    message = build_notification_message(
        note_id=note.id,
        note_name=note.name,
        topic=topic,
        late_minutes=0,
        app_base_url=settings.app.base_url,
        tags=settings.ntfy.default_tags,
    )
    sent = transport.send(
        message.topic,
        message.title,
        message.body,
        message.priority,
        list(message.tags),
        click_url=message.click_url,
    )
    print(
        json.dumps(
            {"sent": sent, "topic": topic, "note_id": note.id, "title": message.title},
            indent=2,
        )
    )
    return 0 if sent else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Revisit review notification scheduler")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Override the configured log level",
    )
    parser.add_argument(
        "--plain-logs",
        action="store_true",
        help="Write human-readable logs instead of JSON",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the scheduler worker")
    run_parser.add_argument(
        "--skip-reconcile",
        action="store_true",
        help="Do not rebuild the queue from the note store on startup",
    )
    run_parser.set_defaults(handler=run_service)

    reconcile_parser = subparsers.add_parser("reconcile", help="Run one reconciliation pass")
    reconcile_parser.set_defaults(handler=run_reconcile)

    status_parser = subparsers.add_parser("status", help="Show queue counts and pending jobs")
    status_parser.add_argument(
        "--limit",
        type=int,
        default=20,
        help="Maximum number of jobs to list per status",
    )
    status_parser.set_defaults(handler=run_status)

    topic_parser = subparsers.add_parser(
        "topic", help="Show a user's notification topic, creating it if missing"
    )
    topic_parser.add_argument("--user-id", required=True, help="User to look up")
    topic_parser.set_defaults(handler=run_topic)

    test_parser = subparsers.add_parser(
        "test-notify", help="Send a test notification for a user's latest note"
    )
    test_parser.add_argument("--user-id", required=True, help="User to notify")
    test_parser.set_defaults(handler=run_test_notify)
    return parser


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)
    configure_logging(
        level=args.log_level or settings.log_level,
        json_output=settings.log_json and not args.plain_logs,
        service="revisit-scheduler",
    )
    try:
        return args.handler(args)
    except SchedulerError as exc:
        logger.error("%s (%s)", exc.message, exc.code)
        return 2


if __name__ == "__main__":
    sys.exit(main())
