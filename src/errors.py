"""Error taxonomy for review scheduling and notification delivery."""

from __future__ import annotations

QUEUE_UNAVAILABLE = "queue_unavailable"
TRANSIENT_DELIVERY_FAILURE = "transient_delivery_failure"
STALE_REFERENCE = "stale_reference"
UNKNOWN_JOB_KIND = "unknown_job_kind"
CONFIGURATION_ERROR = "configuration_error"


class SchedulerError(Exception):
    """Base error carrying a stable code and structured details."""

    code = "scheduler_error"
    retryable = False

    def __init__(self, message: str, details: dict[str, object] | None = None) -> None:
        """Initialize the error with a message and optional structured metadata."""
        super().__init__(message)
        self.message = message
        self.details = details or {}


class QueueUnavailable(SchedulerError):
    """Raised when the durable delay queue store cannot be reached."""

    code = QUEUE_UNAVAILABLE
    retryable = True


class TransientDeliveryFailure(SchedulerError):
    """Raised when the notification transport rejects or drops a message."""

    code = TRANSIENT_DELIVERY_FAILURE
    retryable = True


class StaleReference(SchedulerError):
    """Raised when a fired job refers to a note that no longer needs notifying."""

    code = STALE_REFERENCE


class UnknownJobKind(SchedulerError):
    """Raised when a queued payload has no registered handler."""

    code = UNKNOWN_JOB_KIND


class ConfigurationError(SchedulerError):
    """Raised at startup when required settings are missing or invalid."""

    code = CONFIGURATION_ERROR
