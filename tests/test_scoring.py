from datetime import timedelta

import pytest

from oversight.scoring import (
    TaskStatus,
    TrendDirection,
    calculate_cos_score,
    calculate_trend,
    count_consecutive_failures,
    is_failure,
    is_success_like,
    success_rate,
)


def test_status_predicates() -> None:
    assert is_success_like(TaskStatus.APPROVED)
    assert is_success_like("completed")
    assert not is_success_like("in_progress")
    assert is_failure("rejected")
    assert not is_failure("queued")


def test_success_rate_empty_is_zero() -> None:
    assert success_rate([]) == 0.0


def test_success_rate_counts_success_like(history) -> None:
    tasks = history(["completed", "success", "approved", "failed"])
    assert success_rate(tasks) == 0.75


@pytest.mark.parametrize("count", [0, 1, 4])
def test_trend_stable_below_minimum(history, count: int) -> None:
    trend = calculate_trend(history(["failed"] * count))
    assert trend.direction == TrendDirection.STABLE
    assert trend.slope == 0.0


def test_trend_declining_when_recent_half_fails(history) -> None:
    tasks = history(["failed", "failed", "completed", "completed", "completed", "completed"])
    trend = calculate_trend(tasks)

    assert trend.direction == TrendDirection.DECLINING
    assert trend.slope == pytest.approx(1 / 3 - 1.0)
    assert trend.declining


def test_trend_improving(history) -> None:
    tasks = history(["completed", "completed", "completed", "failed", "failed", "failed"])
    trend = calculate_trend(tasks)

    assert trend.direction == TrendDirection.IMPROVING
    assert trend.slope == pytest.approx(1.0)


def test_trend_stable_inside_band(history) -> None:
    tasks = history(["completed"] * 6)
    assert calculate_trend(tasks).direction == TrendDirection.STABLE


def test_trend_odd_length_splits_at_floor_midpoint(history) -> None:
    # Recent half is the first 4, older half the last 5
    tasks = history(["completed"] * 9)
    assert calculate_trend(tasks).slope == 0.0


def test_perfect_task_scores_one(make_task, now) -> None:
    task = make_task(
        "completed",
        quality_score=100,
        due_date=now,
        completed_at=now - timedelta(hours=1),
        retry_count=0,
    )
    assert calculate_cos_score(task, now) == pytest.approx(1.0)


def test_cos_score_without_task_is_zero(now) -> None:
    assert calculate_cos_score(None, now) == 0.0


def test_cos_score_defaults_for_success_without_details(make_task, now) -> None:
    # 0.4 completion + 0.3*0.7 quality + 0.2*0.5 timeliness + 0.1 retries
    task = make_task("success")
    assert calculate_cos_score(task, now) == pytest.approx(0.4 + 0.21 + 0.1 + 0.1)


def test_cos_score_failed_task(make_task, now) -> None:
    # Quality only counts for failures when explicitly scored
    task = make_task("failed", retry_count=5)
    assert calculate_cos_score(task, now) == pytest.approx(0.1)


def test_cos_score_in_progress_gets_half_completion(make_task, now) -> None:
    task = make_task("in_progress", retry_count=5)
    assert calculate_cos_score(task, now) == pytest.approx(0.2 + 0.1)


def test_cos_score_late_completion_decays(make_task, now) -> None:
    due = now - timedelta(days=10)
    half_late = make_task(
        "completed", quality_score=100, due_date=due, completed_at=due + timedelta(days=3.5)
    )
    very_late = make_task(
        "completed", quality_score=100, due_date=due, completed_at=due + timedelta(days=8)
    )

    assert calculate_cos_score(half_late, now) == pytest.approx(0.4 + 0.3 + 0.1 + 0.1)
    assert calculate_cos_score(very_late, now) == pytest.approx(0.4 + 0.3 + 0.0 + 0.1)


def test_cos_score_handles_naive_datetimes(make_task, now) -> None:
    naive_due = now.replace(tzinfo=None)
    task = make_task(
        "completed",
        quality_score=100,
        due_date=naive_due,
        completed_at=naive_due - timedelta(minutes=5),
    )
    assert calculate_cos_score(task, now) == pytest.approx(1.0)


@pytest.mark.parametrize(
    "status,quality,retries",
    [
        ("completed", 100, 0),
        ("completed", 0, 20),
        ("failed", 100, 0),
        ("queued", None, 3),
        ("approved", 150, -1),
    ],
)
def test_cos_score_bounded(make_task, now, status: str, quality, retries: int) -> None:
    task = make_task(status, quality_score=quality, retry_count=retries)
    assert 0.0 <= calculate_cos_score(task, now) <= 1.0


def test_consecutive_failures_stop_at_success(history) -> None:
    tasks = history(["failed", "rejected", "failed", "completed", "failed"])
    assert count_consecutive_failures(tasks) == 3


def test_consecutive_failures_stop_at_approved(history) -> None:
    tasks = history(["failed", "approved", "failed"])
    assert count_consecutive_failures(tasks) == 1


def test_consecutive_failures_skip_pending_work(history) -> None:
    tasks = history(["in_progress", "failed", "queued", "failed", "success"])
    assert count_consecutive_failures(tasks) == 2
