"""Canonical structured log field and event names.

Keeping the names in one place lets log pipelines key on them without drift
between the queue, the dispatch handler, and reconciliation.
"""

TIMESTAMP = "timestamp"
LEVEL = "level"
LOGGER = "logger"
MESSAGE = "message"
EVENT = "event"
SERVICE = "service"
ENVIRONMENT = "environment"

# Scheduling fields.
NOTE_ID = "note_id"
JOB_KEY = "job_key"
JOB_KIND = "job_kind"
DUE_AT = "due_at"
RUN_AT = "run_at"
DELAY_MS = "delay_ms"
ATTEMPT = "attempt"
MAX_ATTEMPTS = "max_attempts"
OUTCOME = "outcome"
ERROR = "error"
ERROR_CODE = "error_code"
DURATION_MS = "duration_ms"
MINUTES_LATE = "minutes_late"
PRIORITY = "priority"

# Event names.
JOB_SCHEDULED = "job_scheduled"
JOB_CANCELLED = "job_cancelled"
JOB_FIRED = "job_fired"
JOB_SUCCEEDED = "job_succeeded"
JOB_SKIPPED = "job_skipped"
JOB_RETRY_SCHEDULED = "job_retry_scheduled"
JOB_FAILED = "job_failed"
JOB_CLAIMS_RELEASED = "job_claims_released"
RECONCILIATION_SUMMARY = "reconciliation_summary"
NOTIFICATION_SENT = "notification_sent"
