"""
Performance scoring over subordinate task histories.

All functions are pure. Histories are ordered newest-first and every
function that depends on the clock takes an explicit ``now``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import StrEnum

from .constraints import SAFETY_CONSTRAINTS, SafetyConstraints
from .models import Task


class TaskStatus(StrEnum):
    QUEUED = "queued"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SUCCESS = "success"
    APPROVED = "approved"
    FAILED = "failed"
    REJECTED = "rejected"


SUCCESS_STATUSES: frozenset[str] = frozenset(
    {TaskStatus.COMPLETED, TaskStatus.SUCCESS, TaskStatus.APPROVED}
)
FAILURE_STATUSES: frozenset[str] = frozenset({TaskStatus.FAILED, TaskStatus.REJECTED})


def is_success_like(status: str | None) -> bool:
    return status in SUCCESS_STATUSES


def is_failure(status: str | None) -> bool:
    return status in FAILURE_STATUSES


class TrendDirection(StrEnum):
    IMPROVING = "improving"
    STABLE = "stable"
    DECLINING = "declining"


@dataclass(frozen=True)
class TrendResult:
    """Direction and slope (-1 to 1) of a task-history window."""

    direction: TrendDirection
    slope: float

    @property
    def declining(self) -> bool:
        return self.direction == TrendDirection.DECLINING

    def to_dict(self) -> dict:
        return {"direction": self.direction.value, "slope": round(self.slope, 4)}


STABLE_TREND = TrendResult(direction=TrendDirection.STABLE, slope=0.0)

# CoS score weights
COMPLETION_WEIGHT = 0.4
QUALITY_WEIGHT = 0.3
TIMELINESS_WEIGHT = 0.2
RETRY_WEIGHT = 0.1

DEFAULT_QUALITY = 0.7
DEFAULT_TIMELINESS = 0.5
LATE_GRACE_DAYS = 7
MAX_RETRIES = 5


def success_rate(tasks: Sequence[Task]) -> float:
    """Fraction of tasks in a success-like status; 0 for an empty sequence."""
    if not tasks:
        return 0.0
    return sum(1 for t in tasks if is_success_like(t.status)) / len(tasks)


def calculate_trend(
    history: Sequence[Task],
    constraints: SafetyConstraints = SAFETY_CONSTRAINTS,
) -> TrendResult:
    """Compare the success rate of the recent half against the older half."""
    if len(history) < constraints.MIN_TASKS_FOR_TREND:
        return STABLE_TREND

    midpoint = len(history) // 2
    slope = success_rate(history[:midpoint]) - success_rate(history[midpoint:])

    # MODERATE_DECLINE also covers the severe band; severity is read from the slope.
    thresholds = constraints.TREND_THRESHOLDS
    if slope <= thresholds.MODERATE_DECLINE:
        direction = TrendDirection.DECLINING
    elif slope >= thresholds.IMPROVEMENT:
        direction = TrendDirection.IMPROVING
    else:
        direction = TrendDirection.STABLE

    return TrendResult(direction=direction, slope=slope)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _timeliness(task: Task, now: datetime) -> float:
    if task.due_date is None:
        return DEFAULT_TIMELINESS

    due = _as_utc(task.due_date)
    finished = _as_utc(task.completed_at) if task.completed_at else _as_utc(now)
    if finished <= due:
        return 1.0

    days_late = (finished - due).total_seconds() / 86400
    return max(0.0, 1 - days_late / LATE_GRACE_DAYS)


def calculate_cos_score(task: Task | None, now: datetime) -> float:
    """Weighted completion/quality/timeliness/retry score in [0, 1]."""
    if task is None:
        return 0.0

    succeeded = is_success_like(task.status)
    score = 0.0

    if succeeded:
        score += COMPLETION_WEIGHT
    elif task.status == TaskStatus.IN_PROGRESS:
        score += COMPLETION_WEIGHT / 2

    if task.quality_score is not None:
        score += QUALITY_WEIGHT * (task.quality_score / 100)
    elif succeeded:
        score += QUALITY_WEIGHT * DEFAULT_QUALITY

    score += TIMELINESS_WEIGHT * _timeliness(task, now)

    retries = task.retry_count or 0
    score += RETRY_WEIGHT * max(0.0, 1 - retries / MAX_RETRIES)

    return min(1.0, max(0.0, score))


def count_consecutive_failures(history: Sequence[Task]) -> int:
    """Count leading failed/rejected tasks, stopping at the first success.

    Tasks still queued or in progress are neither counted nor a stop.
    """
    count = 0
    for task in history:
        if is_failure(task.status):
            count += 1
        elif is_success_like(task.status):
            break
    return count
