"""Data models for the Revisit review scheduler."""

from __future__ import annotations

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Enum, ForeignKey, Integer, String, Text
from sqlalchemy.orm import declarative_base

# SQLAlchemy base
Base = declarative_base()


class ReviewStage(str, enum.Enum):
    """Ordered review stages, from first repetition to mastered."""

    TEN_MINUTES = "TEN_MINUTES"
    ONE_DAY = "ONE_DAY"
    SEVEN_DAYS = "SEVEN_DAYS"
    ONE_MONTH = "ONE_MONTH"
    THREE_MONTHS = "THREE_MONTHS"
    ONE_YEAR = "ONE_YEAR"
    TWO_YEARS = "TWO_YEARS"
    FIVE_YEARS = "FIVE_YEARS"
    COMPLETED = "COMPLETED"


ReviewStageEnum = Enum(
    ReviewStage,
    name="review_stage",
    native_enum=False,
)
ReviewActionEnum = Enum(
    "weak",
    "again",
    "good",
    name="review_action",
    native_enum=False,
)
JobStatusEnum = Enum(
    "delayed",
    "active",
    "failed",
    name="job_status",
    native_enum=False,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return uuid.uuid4().hex


class User(Base):
    """Note owner and their push notification identity."""

    __tablename__ = "users"

    id = Column(String(64), primary_key=True, default=_new_id)
    name = Column(String(200), nullable=True)
    ntfy_topic = Column(String(200), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class Note(Base):
    """A note moving through the spaced-repetition stages."""

    __tablename__ = "notes"

    id = Column(String(64), primary_key=True, default=_new_id)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(200), nullable=False)
    text = Column(Text, nullable=False, default="")
    link = Column(String(2000), nullable=True)
    current_stage = Column(ReviewStageEnum, nullable=False, default=ReviewStage.TEN_MINUTES)
    next_review = Column(DateTime(timezone=True), nullable=False, index=True)
    last_review = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ReviewHistory(Base):
    """One review action applied to a note."""

    __tablename__ = "review_history"

    id = Column(Integer, primary_key=True)
    note_id = Column(String(64), ForeignKey("notes.id", ondelete="CASCADE"), nullable=False)
    action_type = Column(ReviewActionEnum, nullable=False)
    old_stage = Column(ReviewStageEnum, nullable=True)
    new_stage = Column(ReviewStageEnum, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow)


class ScheduledJob(Base):
    """Durable delayed job, one row per job key.

    Timestamps come back naive from SQLite; readers normalize them to UTC when
    building snapshots rather than on load.
    """

    __tablename__ = "scheduled_jobs"

    id = Column(Integer, primary_key=True)
    job_key = Column(String(200), nullable=False, unique=True)
    kind = Column(String(100), nullable=False)
    payload = Column(JSON, nullable=False)
    status = Column(JobStatusEnum, nullable=False, default="delayed")
    run_at = Column(DateTime(timezone=True), nullable=False, index=True)
    attempts_made = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False)
    backoff_strategy = Column(String(20), nullable=False)
    backoff_base_ms = Column(Integer, nullable=False, default=0)
    version = Column(Integer, nullable=False, default=1)
    claim_token = Column(String(64), nullable=True)
    claimed_at = Column(DateTime(timezone=True), nullable=True)
    last_error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow)
    updated_at = Column(DateTime(timezone=True), default=_utcnow)
    finished_at = Column(DateTime(timezone=True), nullable=True)
