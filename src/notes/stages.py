"""Spaced-repetition stage progression."""

from __future__ import annotations

from datetime import datetime, timedelta

from models import ReviewStage
from time_utils import ensure_utc

STAGE_ORDER: tuple[ReviewStage, ...] = (
    ReviewStage.TEN_MINUTES,
    ReviewStage.ONE_DAY,
    ReviewStage.SEVEN_DAYS,
    ReviewStage.ONE_MONTH,
    ReviewStage.THREE_MONTHS,
    ReviewStage.ONE_YEAR,
    ReviewStage.TWO_YEARS,
    ReviewStage.FIVE_YEARS,
    ReviewStage.COMPLETED,
)

# Time until the next review once a note enters the stage.
STAGE_DURATIONS: dict[ReviewStage, timedelta] = {
    ReviewStage.TEN_MINUTES: timedelta(minutes=10),
    ReviewStage.ONE_DAY: timedelta(days=1),
    ReviewStage.SEVEN_DAYS: timedelta(days=7),
    ReviewStage.ONE_MONTH: timedelta(days=30),
    ReviewStage.THREE_MONTHS: timedelta(days=90),
    ReviewStage.ONE_YEAR: timedelta(days=365),
    ReviewStage.TWO_YEARS: timedelta(days=730),
    ReviewStage.FIVE_YEARS: timedelta(days=1825),
}

COMPLETED_HORIZON = timedelta(days=100 * 365)

STAGE_LABELS: dict[ReviewStage, str] = {
    ReviewStage.TEN_MINUTES: "10 min",
    ReviewStage.ONE_DAY: "1 day",
    ReviewStage.SEVEN_DAYS: "7 days",
    ReviewStage.ONE_MONTH: "1 month",
    ReviewStage.THREE_MONTHS: "3 months",
    ReviewStage.ONE_YEAR: "1 year",
    ReviewStage.TWO_YEARS: "2 years",
    ReviewStage.FIVE_YEARS: "5 years",
    ReviewStage.COMPLETED: "Completed",
}

REVIEW_ACTIONS = frozenset({"weak", "again", "good"})


def next_stage(current: ReviewStage | str | None, action: str) -> ReviewStage:
    """Return the stage a note moves to after a review action.

    ``good`` advances one stage, ``again`` stays, and ``weak`` steps back one.
    Movement is clamped to the first and last stage.
    """
    if action not in REVIEW_ACTIONS:
        raise ValueError(f"Unsupported review action: {action}")
    stage = ReviewStage(current) if current is not None else ReviewStage.TEN_MINUTES
    index = STAGE_ORDER.index(stage)
    if action == "good":
        index = min(index + 1, len(STAGE_ORDER) - 1)
    elif action == "weak":
        index = max(index - 1, 0)
    return STAGE_ORDER[index]


def next_review_at(stage: ReviewStage | str, now: datetime) -> datetime:
    """Return when a note entering ``stage`` is next due."""
    stage = ReviewStage(stage)
    now = ensure_utc(now)
    if stage is ReviewStage.COMPLETED:
        return now + COMPLETED_HORIZON
    return now + STAGE_DURATIONS[stage]
