"""Pytest configuration for the Revisit scheduler test suite."""

import os
import sys
from pathlib import Path
from typing import Generator

import pytest


def _ensure_test_env() -> None:
    """Seed required environment variables for tests."""
    os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
    os.environ.setdefault("NTFY_BASE_URL", "http://ntfy.test")
    os.environ.setdefault("APP_BASE_URL", "http://app.test")
    os.environ.setdefault("CELERY_BROKER_URL", "memory://")


_ensure_test_env()

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
sys.path.insert(0, str(SRC))
sys.path.insert(0, str(ROOT / "test"))

from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import sessionmaker  # noqa: E402

from models import Base  # noqa: E402


@pytest.fixture()
def sqlite_engine(tmp_path: Path):
    """Provide a sqlite engine backed by a temp file with all tables created."""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'revisit.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def sqlite_session_factory(sqlite_engine) -> Generator[sessionmaker, None, None]:
    """Provide a sqlite session factory for scheduler tests."""
    yield sessionmaker(bind=sqlite_engine, expire_on_commit=False)
