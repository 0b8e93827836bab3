"""Single-attempt HTTP calls for outbound notification delivery.

Requests made here run inside delay-queue jobs, and the queue owns retries
and backoff. Each call is one attempt with a bounded timeout; the
configured :class:`ErrorStrategy` only decides whether a failed attempt
raises or is logged and reported as ``None``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from config import settings

logger = logging.getLogger(__name__)


class ErrorStrategy(Enum):
    """What a failed request does: raise, or log and return None."""

    RAISE = "raise"
    LOG_AND_RETURN_NONE = "log_and_return_none"


@dataclass(frozen=True)
class ErrorConfig:
    """Reporting options for failed requests."""

    strategy: ErrorStrategy = ErrorStrategy.RAISE
    log_level: int = logging.ERROR
    include_response_body: bool = False


def _describe_failure(method: str, url: str, error: httpx.HTTPError, include_body: bool) -> str:
    description = f"HTTP {method} {url} failed: {error}"
    if isinstance(error, httpx.HTTPStatusError):
        description += f" (status {error.response.status_code})"
        if include_body:
            description += f"\nResponse body: {error.response.text}"
    return description


class HttpClient:
    """Make one bounded HTTP request per call.

    ``timeout`` and ``connect_timeout`` default to ``settings.http``; the
    connect phase is capped at the overall timeout.
    """

    def __init__(
        self,
        timeout: float | None = None,
        connect_timeout: float | None = None,
        error_config: ErrorConfig | None = None,
    ) -> None:
        self.timeout = settings.http.timeout if timeout is None else timeout
        requested_connect = (
            settings.http.connect_timeout if connect_timeout is None else connect_timeout
        )
        self.connect_timeout = min(requested_connect, self.timeout)
        self.error_config = error_config or ErrorConfig()

    def get(self, url: str, **kwargs: Any) -> httpx.Response | None:
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs: Any) -> httpx.Response | None:
        """POST to ``url``; keyword arguments go straight to httpx (json, headers, ...)."""
        return self.request("POST", url, **kwargs)

    def request(self, method: str, url: str, **kwargs: Any) -> httpx.Response | None:
        """Send one request and return the response if it was 2xx.

        Raises:
            httpx.HTTPError: The request failed and the strategy is ``RAISE``.
        """
        timeout = httpx.Timeout(self.timeout, connect=self.connect_timeout)
        try:
            with httpx.Client(timeout=timeout) as client:
                response = client.request(method, url, **kwargs)
                response.raise_for_status()
        except httpx.HTTPError as exc:
            if self.error_config.strategy is ErrorStrategy.RAISE:
                raise
            logger.log(
                self.error_config.log_level,
                _describe_failure(method, url, exc, self.error_config.include_response_body),
            )
            return None
        return response
