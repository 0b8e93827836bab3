"""Unit tests for the ntfy notification client."""

from __future__ import annotations

import httpx
import pytest

from config import NtfyConfig
from errors import ConfigurationError
from helpers.httpx_stub import StubHttpxClient, build_response, status_error
from services.ntfy import NtfyClient


def test_missing_base_url_is_configuration_error() -> None:
    """A client cannot be built without a server URL."""
    with pytest.raises(ConfigurationError) as excinfo:
        NtfyClient(None)
    assert excinfo.value.details["env"] == "NTFY_BASE_URL"

    with pytest.raises(ConfigurationError):
        NtfyClient.from_settings(NtfyConfig(base_url="   "))


def test_send_posts_json_payload(monkeypatch) -> None:
    """send posts topic, title, message, priority, tags, and click link."""
    stub = StubHttpxClient(build_response(200, json_data={"id": "abc"}))
    monkeypatch.setattr(httpx, "Client", stub)
    client = NtfyClient("http://ntfy.test/", token="secret", timeout_seconds=3)

    sent = client.send(
        "ada-reviews",
        "Time to review: Graphs",
        "Your note is ready for review.",
        4,
        ["alarm_clock", "book"],
        click_url="http://app.test/notes/n1",
    )

    assert sent is True
    method, url, kwargs = stub.requests[0]
    assert method == "POST"
    assert url == "http://ntfy.test/"
    assert kwargs["json"] == {
        "topic": "ada-reviews",
        "title": "Time to review: Graphs",
        "message": "Your note is ready for review.",
        "priority": 4,
        "tags": ["alarm_clock", "book"],
        "click": "http://app.test/notes/n1",
    }
    assert kwargs["headers"]["Authorization"] == "Bearer secret"
    assert stub.init_kwargs["timeout"].read == 3


def test_send_omits_click_and_auth_when_unset(monkeypatch) -> None:
    """Optional fields are left out of the request."""
    stub = StubHttpxClient(build_response(200))
    monkeypatch.setattr(httpx, "Client", stub)
    client = NtfyClient("http://ntfy.test")

    assert client.send("t", "title", "body", 4, []) is True

    _, _, kwargs = stub.requests[0]
    assert "click" not in kwargs["json"]
    assert "Authorization" not in kwargs["headers"]


def test_send_returns_false_on_error_status(monkeypatch, caplog) -> None:
    """Non-2xx responses are reported as failed deliveries."""
    monkeypatch.setattr(httpx, "Client", StubHttpxClient(status_error(503, json_data={"error": "unavailable"})))
    client = NtfyClient("http://ntfy.test")

    assert client.send("t", "title", "body", 5, []) is False
    assert "HTTP POST http://ntfy.test/ failed" in caplog.text


def test_send_returns_false_on_timeout(monkeypatch) -> None:
    """Timeouts and connection errors are failed deliveries, not exceptions."""
    error = httpx.ReadTimeout("timed out", request=httpx.Request("POST", "http://ntfy.test/"))
    monkeypatch.setattr(httpx, "Client", StubHttpxClient(error))
    client = NtfyClient("http://ntfy.test")

    assert client.send("t", "title", "body", 4, []) is False
