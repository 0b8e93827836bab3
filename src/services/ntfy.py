"""Push notifications via an ntfy server."""

from __future__ import annotations

import logging
from typing import Any

from config import NtfyConfig, settings
from errors import ConfigurationError
from services.http_client import ErrorConfig, ErrorStrategy, HttpClient

logger = logging.getLogger(__name__)


class NtfyClient:
    """Client for publishing JSON messages to an ntfy server."""

    def __init__(
        self,
        base_url: str | None,
        *,
        token: str | None = None,
        timeout_seconds: float = 10.0,
        http_client: HttpClient | None = None,
    ):
        if not base_url or not base_url.strip():
            raise ConfigurationError(
                "ntfy.base_url is required to send review notifications.",
                {"setting": "ntfy.base_url", "env": "NTFY_BASE_URL"},
            )
        self.base_url = base_url.strip().rstrip("/")
        self.token = token
        self.timeout_seconds = timeout_seconds
        self._http = http_client or HttpClient(
            timeout=timeout_seconds,
            error_config=ErrorConfig(
                strategy=ErrorStrategy.LOG_AND_RETURN_NONE,
                log_level=logging.WARNING,
                include_response_body=True,
            ),
        )

    @classmethod
    def from_settings(cls, ntfy_config: NtfyConfig | None = None) -> "NtfyClient":
        """Build a client from the ``ntfy`` settings section."""
        ntfy_config = ntfy_config or settings.ntfy
        return cls(
            ntfy_config.base_url,
            token=ntfy_config.token,
            timeout_seconds=ntfy_config.timeout_seconds,
        )

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def send(
        self,
        topic: str,
        title: str,
        body: str,
        priority: int,
        tags: list[str],
        click_url: str | None = None,
    ) -> bool:
        """Publish one notification.

        Args:
            topic: The recipient's ntfy topic
            title: Notification title
            body: Notification body text
            priority: ntfy priority from 1 (min) to 5 (max)
            tags: Emoji shortcode tags shown with the message
            click_url: Optional URL opened when the notification is tapped

        Returns:
            True if the server accepted the message, False otherwise
        """
        payload: dict[str, Any] = {
            "topic": topic,
            "title": title,
            "message": body,
            "priority": priority,
            "tags": list(tags),
        }
        if click_url:
            payload["click"] = click_url

        response = self._http.post(f"{self.base_url}/", json=payload, headers=self._headers())
        if response is None:
            logger.warning(f"ntfy rejected or dropped notification for topic {topic}")
            return False

        logger.info(f"Sent notification to ntfy topic {topic}")
        return True
