"""Settings for the Revisit review scheduler.

Values are layered, highest precedence first: constructor arguments, the
environment variables listed in ``_ENV_MAPPING``, ``secrets.yml``, the user
``revisit.yml``, then ``config/revisit.yml`` in the repository. Nested YAML
sections merge key by key across layers.
"""

from __future__ import annotations

import json
import os
from functools import reduce
from pathlib import Path
from typing import Any, Callable

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

_REPO_ROOT = Path(__file__).resolve().parents[1]
_DEFAULT_CONFIG_PATH = _REPO_ROOT / "config" / "revisit.yml"
_USER_CONFIG_PATHS = [
    Path("~/.config/revisit/revisit.yml").expanduser(),
    Path("/config/revisit.yml"),
]
_USER_SECRETS_PATHS = [
    Path("~/.config/revisit/secrets.yml").expanduser(),
    Path("/config/secrets.yml"),
]

BACKOFF_STRATEGIES = frozenset({"fixed", "exponential", "none"})
LOG_LEVELS = frozenset({"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"})


def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


# Environment variable -> (dotted settings path, parser). Names follow the
# web app's deployment environment so both processes share one env file.
_ENV_MAPPING: dict[str, tuple[str, Callable[[str], Any]]] = {
    "DATABASE_URL": ("database.url", str),
    "NTFY_BASE_URL": ("ntfy.base_url", str),
    "NTFY_TOKEN": ("ntfy.token", str),
    "NTFY_TIMEOUT_SECONDS": ("ntfy.timeout_seconds", float),
    "NTFY_DEFAULT_TAGS": ("ntfy.default_tags", json.loads),
    "NEXT_PUBLIC_APP_URL": ("app.base_url", str),
    "APP_BASE_URL": ("app.base_url", str),
    "REVIEW_MAX_ATTEMPTS": ("scheduler.max_attempts", int),
    "REVIEW_BACKOFF_STRATEGY": ("scheduler.backoff_strategy", str),
    "REVIEW_BACKOFF_BASE_SECONDS": ("scheduler.backoff_base_seconds", float),
    "REVIEW_POLL_INTERVAL_SECONDS": ("scheduler.poll_interval_seconds", float),
    "REVIEW_RECONCILE_INTERVAL_SECONDS": ("scheduler.reconcile_interval_seconds", float),
    "SKIP_RESCHEDULE": ("scheduler.skip_reconcile_on_startup", _as_bool),
    "CELERY_BROKER_URL": ("celery.broker_url", str),
    "CELERY_QUEUE_NAME": ("celery.queue_name", str),
    "LOG_LEVEL": ("log_level", str),
    "LOG_JSON": ("log_json", _as_bool),
}


def _read_yaml_mapping(path: Path) -> dict[str, Any]:
    """Return the mapping stored at ``path``; a missing file is an empty mapping."""
    if not path.is_file():
        return {}
    loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config file must contain a mapping: {path}")
    return loaded


def _yaml_layer(paths_getter: Callable[[], list[Path]]) -> Callable[[], dict[str, Any]]:
    """Settings source reading each path in order; later files win per top-level key."""

    def source() -> dict[str, Any]:
        layer: dict[str, Any] = {}
        for path in paths_getter():
            layer.update(_read_yaml_mapping(path))
        return layer

    return source


def _env_layer() -> dict[str, Any]:
    """Settings source built from the documented environment variables."""
    layer: dict[str, Any] = {}
    # Later entries in the mapping win, so APP_BASE_URL overrides NEXT_PUBLIC_APP_URL.
    for env_key, (dotted_path, parse) in _ENV_MAPPING.items():
        raw = os.environ.get(env_key)
        if raw is None:
            continue
        *sections, leaf = dotted_path.split(".")
        section = reduce(lambda node, name: node.setdefault(name, {}), sections, layer)
        section[leaf] = parse(raw)
    return layer


class DatabaseConfig(BaseModel):
    """Connection shared by the note store and the delay queue store."""

    url: str = "sqlite:///data/revisit.db"
    echo: bool = False


class NtfyConfig(BaseModel):
    """Push notification transport."""

    base_url: str | None = None
    token: str | None = None
    timeout_seconds: float = Field(default=10.0, gt=0)
    default_tags: list[str] = Field(default_factory=lambda: ["alarm_clock", "book"])

    @field_validator("base_url", "token")
    @classmethod
    def blank_is_unset(cls, value: str | None) -> str | None:
        if value is None:
            return None
        return value.strip() or None


class AppConfig(BaseModel):
    """Public web app URL used to build note links."""

    base_url: str = "http://localhost:3000"

    @field_validator("base_url")
    @classmethod
    def strip_trailing_slash(cls, value: str) -> str:
        return value.strip().rstrip("/")


class HttpConfig(BaseModel):
    timeout: float = Field(default=10.0, gt=0)
    connect_timeout: float = Field(default=5.0, gt=0)


class SchedulerConfig(BaseModel):
    """Delay queue retries, worker polling, and reconciliation."""

    max_attempts: int = Field(default=3, ge=1)
    backoff_strategy: str = "exponential"
    backoff_base_seconds: float = Field(default=2.0, ge=0)
    poll_interval_seconds: float = Field(default=1.0, gt=0)
    batch_size: int = Field(default=50, ge=1)
    stale_claim_seconds: int = Field(default=600, ge=1)
    skip_reconcile_on_startup: bool = False
    # 0 disables periodic reconciliation; startup reconciliation still runs.
    reconcile_interval_seconds: float = Field(default=0.0, ge=0)
    shutdown_timeout_seconds: float = Field(default=30.0, ge=0)

    @field_validator("backoff_strategy")
    @classmethod
    def known_backoff_strategy(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in BACKOFF_STRATEGIES:
            raise ValueError(
                "scheduler.backoff_strategy must be one of: "
                + ", ".join(sorted(BACKOFF_STRATEGIES))
            )
        return normalized


class CeleryConfig(BaseModel):
    """Broker for the Celery beat tasks."""

    broker_url: str = "redis://localhost:6379/1"
    queue_name: str = "revisit"


class Settings(BaseSettings):
    """Scheduler settings assembled from the environment and YAML layers."""

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    log_level: str = "INFO"
    log_json: bool = True

    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    ntfy: NtfyConfig = Field(default_factory=NtfyConfig)
    app: AppConfig = Field(default_factory=AppConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    scheduler: SchedulerConfig = Field(default_factory=SchedulerConfig)
    celery: CeleryConfig = Field(default_factory=CeleryConfig)

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            _env_layer,
            _yaml_layer(lambda: _USER_SECRETS_PATHS),
            _yaml_layer(lambda: _USER_CONFIG_PATHS),
            _yaml_layer(lambda: [_DEFAULT_CONFIG_PATH]),
        )

    @field_validator("log_level")
    @classmethod
    def known_log_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in LOG_LEVELS:
            raise ValueError(f"Unsupported log_level: {value}")
        return level


settings = Settings()
