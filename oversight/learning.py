"""
Learning ledger: records amendment outcomes against the recommendations
they came from and keeps per (bot, subordinate, pattern) statistics used to
re-rank future recommendations.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import Sequence
from dataclasses import dataclass, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from . import db
from .confidence import confidence_score
from .db import STORE_ERRORS, SessionFactory
from .errors import is_unique_violation
from .models import LearningRecord

logger = logging.getLogger(__name__)

DEPRIORITIZE_BELOW = 0.3
BOOST_ABOVE = 0.7
NO_HISTORY_NOTE = "No historical data for this pattern"


class ImpactLevel(StrEnum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


IMPACT_RANK: dict[str, int] = {
    ImpactLevel.HIGH: 3,
    ImpactLevel.MEDIUM: 2,
    ImpactLevel.LOW: 1,
}


def impact_rank(expected_impact: str | None) -> int:
    """Sort rank of an impact level; anything unrecognized ranks 0."""
    return IMPACT_RANK.get(expected_impact, 0)


@dataclass(frozen=True)
class OutcomeData:
    subordinate_role: str
    targeting_pattern: str
    succeeded: bool
    impact: float


@dataclass(frozen=True)
class CandidateRecommendation:
    """A recommendation proposed by a knowledge bot, before selection."""

    targeting_pattern: str
    expected_impact: str = ImpactLevel.MEDIUM.value
    recommendation_text: str | None = None
    id: str | None = None
    learning_note: str | None = None
    historical_success_rate: float | None = None
    historical_avg_impact: float | None = None
    confidence_score: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "targeting_pattern": self.targeting_pattern,
            "expected_impact": self.expected_impact,
            "recommendation_text": self.recommendation_text,
            "learning_note": self.learning_note,
            "historical_success_rate": self.historical_success_rate,
            "historical_avg_impact": self.historical_avg_impact,
            "confidence_score": self.confidence_score,
        }


def annotate_candidate(
    candidate: CandidateRecommendation, record: LearningRecord | None
) -> CandidateRecommendation:
    """Apply what the ledger knows about a candidate's pattern."""
    if record is None or not record.total_recommendations:
        return replace(
            candidate,
            learning_note=NO_HISTORY_NOTE,
            historical_success_rate=None,
            historical_avg_impact=None,
            confidence_score=None,
        )

    successes = record.successful_recommendations
    total = record.total_recommendations
    rate = successes / total
    stats = f"historical success rate {rate * 100:.0f}% ({successes}/{total})"

    expected_impact = candidate.expected_impact
    if rate < DEPRIORITIZE_BELOW:
        expected_impact = ImpactLevel.LOW.value
        note = f"Deprioritized: {stats}"
    elif rate > BOOST_ABOVE:
        expected_impact = ImpactLevel.HIGH.value
        note = f"Boosted: {stats}"
    else:
        note = stats[0].upper() + stats[1:]

    return replace(
        candidate,
        expected_impact=expected_impact,
        learning_note=note,
        historical_success_rate=rate,
        historical_avg_impact=record.avg_impact,
        confidence_score=record.confidence_score,
    )


def sort_candidates(candidates: Sequence[CandidateRecommendation]) -> list[CandidateRecommendation]:
    """Highest impact first, then most confident. Stable for full ties."""
    return sorted(
        candidates,
        key=lambda c: (impact_rank(c.expected_impact), c.confidence_score or 0.0),
        reverse=True,
    )


class LearningLedger:
    """Outcome recording and recommendation re-prioritization.

    Every operation degrades to a logged no-op when no store is configured
    or reachable. Updates to the same learning key are serialized within this
    process; a unique-constraint collision with another process drops that
    update, and the bot's metrics only count outcomes that were applied.
    """

    def __init__(self, session_factory: SessionFactory | None) -> None:
        self._session_factory = session_factory
        # Entries vanish once no caller holds or waits on the lock
        self._locks: weakref.WeakValueDictionary[tuple[str, str, str], asyncio.Lock] = (
            weakref.WeakValueDictionary()
        )

    @property
    def available(self) -> bool:
        return self._session_factory is not None

    def _lock_for(self, key: tuple[str, str, str]) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    # =========================================================================
    # Outcomes
    # =========================================================================

    async def record_outcome(
        self,
        amendment_id: str,
        succeeded: bool,
        variance_before: float,
        variance_after: float,
        now: datetime,
    ) -> bool:
        """Write an amendment's outcome back to its recommendation and learn from it.

        Returns True only when a learning update was applied. Amendments with no
        originating recommendation, and outcomes already recorded, are skipped.
        """
        session_factory = self._session_factory
        if session_factory is None:
            logger.warning("Store unavailable, outcome for amendment %s not recorded", amendment_id)
            return False

        impact = variance_before - variance_after

        try:
            async with session_factory() as session:
                rec = await db.get_recommendation_by_amendment(session, amendment_id)
                if rec is None:
                    logger.info("No recommendation linked to amendment %s", amendment_id)
                    return False

                claimed = await db.claim_recommendation_outcome(
                    session,
                    rec.id,
                    succeeded=succeeded,
                    impact=impact,
                    variance_before=variance_before,
                    variance_after=variance_after,
                    recorded_at=now,
                )
                bot_role = rec.knowledge_bot_role
                outcome = OutcomeData(
                    subordinate_role=rec.subordinate_role,
                    targeting_pattern=rec.targeting_pattern,
                    succeeded=succeeded,
                    impact=impact,
                )
        except STORE_ERRORS as exc:
            logger.error("Error recording outcome for amendment %s: %s", amendment_id, exc)
            return False

        if not claimed:
            logger.info("Outcome for amendment %s already recorded, skipping", amendment_id)
            return False

        return await self.update_learning(bot_role, outcome, now)

    async def update_learning(self, bot_role: str, outcome: OutcomeData, now: datetime) -> bool:
        """Fold one outcome into the learning record and the bot's metrics."""
        session_factory = self._session_factory
        if session_factory is None:
            logger.warning("Store unavailable, learning update for %s skipped", bot_role)
            return False

        key = (bot_role, outcome.subordinate_role, outcome.targeting_pattern)
        async with self._lock_for(key):
            applied = await self._apply_outcome(session_factory, key, outcome, now)
            if applied:
                await self._bump_metrics(
                    bot_role,
                    succeeded=1 if outcome.succeeded else 0,
                    failed=0 if outcome.succeeded else 1,
                    last_outcome_at=now,
                )
        return applied

    async def _apply_outcome(
        self,
        session_factory: SessionFactory,
        key: tuple[str, str, str],
        outcome: OutcomeData,
        now: datetime,
    ) -> bool:
        bot_role, subordinate_role, pattern = key
        success = 1 if outcome.succeeded else 0

        try:
            async with session_factory() as session:
                record = await db.get_learning_record(session, bot_role, subordinate_role, pattern)
                if record is None:
                    await db.create_learning_record(
                        session,
                        knowledge_bot_role=bot_role,
                        subordinate_role=subordinate_role,
                        targeting_pattern=pattern,
                        total=1,
                        successful=success,
                        failed=1 - success,
                        avg_impact=outcome.impact,
                        confidence=confidence_score(1, success, outcome.impact),
                        updated_at=now,
                    )
                else:
                    old_total = record.total_recommendations
                    total = old_total + 1
                    successes = record.successful_recommendations + success
                    avg_impact = (record.avg_impact * old_total + outcome.impact) / total

                    record.total_recommendations = total
                    record.successful_recommendations = successes
                    record.failed_recommendations = record.failed_recommendations + 1 - success
                    record.avg_impact = avg_impact
                    record.confidence_score = confidence_score(total, successes, avg_impact)
                    record.last_updated_at = now
        except STORE_ERRORS as exc:
            if is_unique_violation(exc):
                # Another writer created the row between our read and insert
                logger.warning("Learning record %s created concurrently; update dropped", key)
            else:
                logger.error("Error updating learning record %s: %s", key, exc)
            return False

        logger.info(
            "Learning updated for %s -> %s (%s): %s",
            bot_role,
            subordinate_role,
            pattern,
            "success" if outcome.succeeded else "failure",
        )
        return True

    async def _bump_metrics(
        self, role: str, *, last_outcome_at: datetime | None = None, **counts: int
    ) -> None:
        session_factory = self._session_factory
        if session_factory is None:
            return

        try:
            async with session_factory() as session:
                if await db.increment_bot_metrics(
                    session, role, last_outcome_at=last_outcome_at, **counts
                ):
                    return
                await db.create_bot_metrics(session, role)
                await db.increment_bot_metrics(
                    session, role, last_outcome_at=last_outcome_at, **counts
                )
            return
        except STORE_ERRORS as exc:
            if not is_unique_violation(exc):
                logger.error("Error updating metrics for %s: %s", role, exc)
                return

        # The row was initialized by someone else; apply the increment to theirs
        try:
            async with session_factory() as session:
                await db.increment_bot_metrics(
                    session, role, last_outcome_at=last_outcome_at, **counts
                )
        except STORE_ERRORS as exc:
            logger.error("Error updating metrics for %s: %s", role, exc)

    # =========================================================================
    # Recommendations
    # =========================================================================

    async def record_recommendation_generated(
        self,
        bot_role: str,
        subordinate_role: str,
        targeting_pattern: str,
        recommendation_text: str | None = None,
        expected_impact: str = ImpactLevel.MEDIUM.value,
    ) -> str | None:
        """Store a freshly generated recommendation. Returns its id."""
        session_factory = self._session_factory
        if session_factory is None:
            logger.warning("Store unavailable, recommendation from %s not recorded", bot_role)
            return None

        try:
            async with session_factory() as session:
                rec = await db.create_recommendation(
                    session,
                    knowledge_bot_role=bot_role,
                    subordinate_role=subordinate_role,
                    targeting_pattern=targeting_pattern,
                    recommendation_text=recommendation_text,
                    expected_impact=expected_impact,
                )
                rec_id = rec.id
        except STORE_ERRORS as exc:
            logger.error("Error recording recommendation from %s: %s", bot_role, exc)
            return None

        await self._bump_metrics(bot_role, generated=1)
        return rec_id

    async def mark_recommendation_selected(
        self, recommendation_id: str, amendment_id: str, now: datetime
    ) -> bool:
        """Link a recommendation to the amendment created from it."""
        session_factory = self._session_factory
        if session_factory is None:
            logger.warning("Store unavailable, selection of %s not recorded", recommendation_id)
            return False

        try:
            async with session_factory() as session:
                rec = await db.get_recommendation(session, recommendation_id)
                if rec is None:
                    logger.info("Recommendation %s not found", recommendation_id)
                    return False
                await db.select_recommendation(session, rec, amendment_id, now)
                bot_role = rec.knowledge_bot_role
        except STORE_ERRORS as exc:
            logger.error("Error selecting recommendation %s: %s", recommendation_id, exc)
            return False

        await self._bump_metrics(bot_role, selected=1)
        return True

    async def adjust_priority(
        self,
        bot_role: str,
        subordinate_role: str,
        candidates: Sequence[CandidateRecommendation],
    ) -> list[CandidateRecommendation]:
        """Re-rank candidates using the ledger's history for this subordinate.

        Without a store the candidates come back unchanged and unsorted.
        """
        session_factory = self._session_factory
        if session_factory is None:
            logger.warning("Store unavailable, candidates for %s not re-prioritized", bot_role)
            return list(candidates)

        try:
            async with session_factory() as session:
                records = await db.get_learning_records(
                    session, bot_role, subordinate_role=subordinate_role
                )
        except STORE_ERRORS as exc:
            logger.error("Error loading learning records for %s: %s", bot_role, exc)
            return list(candidates)

        by_pattern = {r.targeting_pattern: r for r in records}
        adjusted = [annotate_candidate(c, by_pattern.get(c.targeting_pattern)) for c in candidates]
        return sort_candidates(adjusted)

    async def learning_history(self, bot_role: str, limit: int = 50) -> list[dict[str, Any]]:
        """Most recent recommendations for a bot with their outcomes."""
        session_factory = self._session_factory
        if session_factory is None:
            return []

        try:
            async with session_factory() as session:
                recs = await db.get_recommendations_for_bot(session, bot_role, limit=limit)
        except STORE_ERRORS as exc:
            logger.error("Error loading learning history for %s: %s", bot_role, exc)
            return []

        return [
            {
                "id": r.id,
                "subordinate_role": r.subordinate_role,
                "targeting_pattern": r.targeting_pattern,
                "expected_impact": r.expected_impact,
                "status": r.status,
                "amendment_id": r.amendment_id,
                "outcome_succeeded": r.outcome_succeeded,
                "outcome_impact": r.outcome_impact,
                "created_at": r.created_at.isoformat() if r.created_at else None,
                "outcome_recorded_at": (
                    r.outcome_recorded_at.isoformat() if r.outcome_recorded_at else None
                ),
            }
            for r in recs
        ]
