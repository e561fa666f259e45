"""
Team lead review cycle: score each subordinate and decide between
no action, a corrective amendment, or an escalation.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import StrEnum
from typing import Any

from . import db
from .amendments import AmendmentDraft, AmendmentSynthesizer
from .config import settings
from .constraints import SAFETY_CONSTRAINTS, SafetyConstraints
from .db import STORE_ERRORS, SessionFactory
from .errors import SchemaNotInitializedError
from .escalation import escalate
from .models import Task, TeamLeadReview
from .scoring import (
    TrendResult,
    calculate_cos_score,
    calculate_trend,
    count_consecutive_failures,
)
from .teams import TeamLeadProfile, TeamRoster

logger = logging.getLogger(__name__)


class ReviewStatus(StrEnum):
    REVIEWED = "reviewed"
    INSUFFICIENT_DATA = "insufficient_data"
    ERROR = "error"


class ReviewAction(StrEnum):
    NONE = "none"
    AMENDMENT = "amendment"
    ESCALATION = "escalation"


@dataclass
class SubordinateReview:
    """Outcome of reviewing one subordinate."""

    subordinate_role: str
    status: ReviewStatus
    trend: TrendResult | None = None
    cos_score: float | None = None
    action: ReviewAction = ReviewAction.NONE
    amendment: AmendmentDraft | None = None
    escalated: bool = False
    escalation_reason: str | None = None
    tasks_reviewed: int = 0
    consecutive_failures: int = 0
    error: str | None = None
    persisted: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "subordinate_role": self.subordinate_role,
            "status": self.status.value,
            "trend": self.trend.to_dict() if self.trend else None,
            "cos_score": self.cos_score,
            "action": self.action.value,
            "amendment": self.amendment.to_dict() if self.amendment else None,
            "escalated": self.escalated,
            "escalation_reason": self.escalation_reason,
            "metrics": {
                "tasks_reviewed": self.tasks_reviewed,
                "consecutive_failures": self.consecutive_failures,
            },
            "error": self.error,
        }


@dataclass
class ReviewCycleResult:
    team_lead: str
    team_id: str
    review_type: str
    timestamp: datetime
    reviews: list[SubordinateReview] = field(default_factory=list)
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "team_lead": self.team_lead,
            "team_id": self.team_id,
            "review_type": self.review_type,
            "timestamp": self.timestamp.isoformat(),
            "reviews": [r.to_dict() for r in self.reviews],
            "error": self.error,
        }


@dataclass(frozen=True)
class Decision:
    action: ReviewAction
    reason: str | None = None


def decide(
    profile: TeamLeadProfile,
    trend: TrendResult,
    cos_score: float,
    consecutive_failures: int,
    constraints: SafetyConstraints = SAFETY_CONSTRAINTS,
) -> Decision:
    """First matching branch wins: failures, critical score, then decline/warning."""
    thresholds = constraints.COS_SCORE_THRESHOLDS

    if consecutive_failures >= profile.consecutive_failures_threshold:
        reason = f"{consecutive_failures} consecutive task failures"
        return Decision(ReviewAction.ESCALATION, reason)

    if cos_score < thresholds.CRITICAL:
        return Decision(ReviewAction.ESCALATION, f"Critical CoS score: {cos_score * 100:.1f}%")

    if trend.declining or cos_score < thresholds.WARNING:
        if profile.amendment_authority:
            return Decision(ReviewAction.AMENDMENT)

    return Decision(ReviewAction.NONE)


class ReviewCycleController:
    """Runs review cycles for the team leads of a roster."""

    def __init__(
        self,
        roster: TeamRoster,
        session_factory: SessionFactory | None,
        constraints: SafetyConstraints = SAFETY_CONSTRAINTS,
        *,
        window_days: int | None = None,
        history_limit: int | None = None,
    ) -> None:
        self._roster = roster
        self._session_factory = session_factory
        self._constraints = constraints
        self._synthesizer = AmendmentSynthesizer(session_factory, constraints)
        self._window = timedelta(days=window_days or settings.review_window_days)
        self._history_limit = history_limit or settings.review_history_limit

    @property
    def roster(self) -> TeamRoster:
        return self._roster

    @property
    def constraints(self) -> SafetyConstraints:
        return self._constraints

    async def run_cycle(self, profile: TeamLeadProfile, now: datetime) -> ReviewCycleResult:
        """Review every subordinate of one team lead, in order."""
        result = ReviewCycleResult(
            team_lead=profile.role,
            team_id=profile.team_id,
            review_type=profile.review_cadence.value,
            timestamp=now,
        )

        session_factory = self._session_factory
        if session_factory is None:
            logger.warning("Store unavailable, skipping review cycle for %s", profile.role)
            result.error = "Database unavailable"
            return result

        logger.info("Starting %s review for %s", profile.review_cadence.value, profile.role)

        for subordinate in profile.subordinates:
            try:
                review = await self._review_subordinate(session_factory, profile, subordinate, now)
            except Exception as exc:
                logger.error("Error reviewing %s: %s", subordinate, exc)
                review = SubordinateReview(
                    subordinate_role=subordinate, status=ReviewStatus.ERROR, error=str(exc)
                )
            result.reviews.append(review)

        logger.info(
            "Completed review for %s: %d subordinates reviewed", profile.role, len(result.reviews)
        )
        return result

    async def run_all(
        self, now: datetime, *, concurrent: bool = False
    ) -> dict[str, ReviewCycleResult]:
        """Run every team lead's cycle. Team leads share no state, so they may run concurrently."""
        profiles = self._roster.profiles
        if concurrent:
            results = await asyncio.gather(*[self.run_cycle(p, now) for p in profiles])
        else:
            results = [await self.run_cycle(p, now) for p in profiles]
        return {r.team_id: r for r in results}

    async def recent_reviews(
        self, team_lead_role: str | None = None, *, limit: int = 50
    ) -> list[TeamLeadReview]:
        """Persisted review rows, newest first. Empty when the store is unavailable."""
        session_factory = self._session_factory
        if session_factory is None:
            logger.warning("Store unavailable, no review history")
            return []

        try:
            async with session_factory() as session:
                return await db.get_recent_reviews(session, team_lead_role, limit)
        except STORE_ERRORS as exc:
            logger.error("Error loading review history: %s", exc)
            return []

    async def fetch_history(
        self, session_factory: SessionFactory, subordinate_role: str, now: datetime
    ) -> list[Task]:
        async with session_factory() as session:
            return await db.get_subordinate_task_history(
                session, subordinate_role, now - self._window, self._history_limit
            )

    async def _review_subordinate(
        self,
        session_factory: SessionFactory,
        profile: TeamLeadProfile,
        subordinate: str,
        now: datetime,
    ) -> SubordinateReview:
        history = await self.fetch_history(session_factory, subordinate, now)

        min_tasks = self._constraints.MIN_TASKS_FOR_TREND
        if len(history) < min_tasks:
            logger.info("Insufficient data for %s (%d tasks)", subordinate, len(history))
            return SubordinateReview(
                subordinate_role=subordinate,
                status=ReviewStatus.INSUFFICIENT_DATA,
                tasks_reviewed=len(history),
            )

        trend = calculate_trend(history, self._constraints)
        cos_score = calculate_cos_score(history[0], now)
        failures = count_consecutive_failures(history)
        decision = decide(profile, trend, cos_score, failures, self._constraints)

        review = SubordinateReview(
            subordinate_role=subordinate,
            status=ReviewStatus.REVIEWED,
            trend=trend,
            cos_score=cos_score,
            action=decision.action,
            tasks_reviewed=len(history),
            consecutive_failures=failures,
        )

        if decision.action == ReviewAction.ESCALATION:
            review.escalated = True
            review.escalation_reason = decision.reason
            outcome = await escalate(
                session_factory,
                profile.role,
                subordinate,
                decision.reason or "",
                target=profile.escalation_target,
            )
            review.error = outcome.error
        elif decision.action == ReviewAction.AMENDMENT:
            review.amendment = await self._synthesizer.synthesize(
                profile.role, subordinate, trend, history, now
            )

        review.persisted = await self._log_review(session_factory, profile, review, trend, now)
        return review

    async def _log_review(
        self,
        session_factory: SessionFactory,
        profile: TeamLeadProfile,
        review: SubordinateReview,
        trend: TrendResult,
        now: datetime,
    ) -> bool:
        amendment = review.amendment
        try:
            async with session_factory() as session:
                await db.add_team_lead_review(
                    session,
                    team_lead_role=profile.role,
                    subordinate_role=review.subordinate_role,
                    review_type=profile.review_cadence.value,
                    trend_direction=trend.direction.value,
                    trend_slope=trend.slope,
                    cos_score=review.cos_score or 0.0,
                    amendment_generated=amendment is not None,
                    amendment_id=amendment.id if amendment else None,
                    escalated=review.escalated,
                    escalation_reason=review.escalation_reason,
                    metrics={
                        "tasks_reviewed": review.tasks_reviewed,
                        "consecutive_failures": review.consecutive_failures,
                    },
                    review_date=now,
                )
        except SchemaNotInitializedError:
            logger.warning(
                "team_lead_reviews table not found; review of %s logged here only: %s",
                review.subordinate_role,
                review.to_dict(),
            )
            return False
        except STORE_ERRORS as exc:
            logger.error("Error logging review of %s: %s", review.subordinate_role, exc)
            return False
        return True
