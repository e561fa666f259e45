"""Reporting rollups over the learning ledger."""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from . import db
from .confidence import confidence_score
from .constraints import SAFETY_CONSTRAINTS, SafetyConstraints
from .db import STORE_ERRORS, SessionFactory
from .models import KnowledgeBotMetrics, KnowledgeBotMetricsSnapshot, LearningRecord
from .scoring import TrendDirection

logger = logging.getLogger(__name__)

MIN_SNAPSHOTS_FOR_TREND = 3
SNAPSHOT_WINDOW = 10
MIN_TOTAL_FOR_LOWEST_SUCCESS = 2


def _ratio(numerator: int, denominator: int) -> float:
    return numerator / denominator if denominator else 0.0


@dataclass(frozen=True)
class PatternSummary:
    highest_impact_pattern: str | None = None
    lowest_success_pattern: str | None = None
    cross_subordinate_insights: int = 0


def summarize_patterns(records: Sequence[LearningRecord]) -> PatternSummary:
    highest: LearningRecord | None = None
    lowest: LearningRecord | None = None
    lowest_rate = 0.0
    subordinates_by_pattern: dict[str, set[str]] = {}

    for record in records:
        if record.successful_recommendations >= 1:
            if highest is None or record.avg_impact > highest.avg_impact:
                highest = record
            subordinates_by_pattern.setdefault(record.targeting_pattern, set()).add(
                record.subordinate_role
            )

        # Small samples say little about failure
        if record.total_recommendations > MIN_TOTAL_FOR_LOWEST_SUCCESS:
            rate = record.successful_recommendations / record.total_recommendations
            if lowest is None or rate < lowest_rate:
                lowest, lowest_rate = record, rate

    return PatternSummary(
        highest_impact_pattern=highest.targeting_pattern if highest else None,
        lowest_success_pattern=lowest.targeting_pattern if lowest else None,
        cross_subordinate_insights=sum(
            1 for subs in subordinates_by_pattern.values() if len(subs) > 1
        ),
    )


def metrics_trend(
    snapshots: Sequence[KnowledgeBotMetricsSnapshot],
    constraints: SafetyConstraints = SAFETY_CONSTRAINTS,
) -> TrendDirection:
    """Compare the newer half of the snapshots (newest first) to the older half."""
    if len(snapshots) < MIN_SNAPSHOTS_FOR_TREND:
        return TrendDirection.STABLE

    mid = len(snapshots) // 2
    recent = snapshots[:mid]
    older = snapshots[mid:]
    diff = sum(s.success_rate for s in recent) / len(recent) - sum(
        s.success_rate for s in older
    ) / len(older)

    band = constraints.TREND_THRESHOLDS.STABLE
    if diff > band:
        return TrendDirection.IMPROVING
    if diff < -band:
        return TrendDirection.DECLINING
    return TrendDirection.STABLE


def cross_subordinate_insights(records: Sequence[LearningRecord]) -> list[dict[str, Any]]:
    """Patterns that have worked for more than one subordinate."""
    groups: dict[str, list[LearningRecord]] = {}
    for record in records:
        if record.successful_recommendations >= 1:
            groups.setdefault(record.targeting_pattern, []).append(record)

    insights = []
    for pattern, group in groups.items():
        subordinates = list(dict.fromkeys(r.subordinate_role for r in group))
        if len(subordinates) < 2:
            continue

        total = sum(r.total_recommendations for r in group)
        successes = sum(r.successful_recommendations for r in group)
        weighted = sum(r.avg_impact * r.total_recommendations for r in group)
        avg_impact = weighted / total if total else 0.0

        insights.append(
            {
                "targeting_pattern": pattern,
                "subordinates": subordinates,
                "subordinate_count": len(subordinates),
                "total_recommendations": total,
                "total_successes": successes,
                "avg_impact": avg_impact,
                "confidence_score": confidence_score(total, successes, avg_impact),
            }
        )

    insights.sort(key=lambda i: (i["subordinate_count"], i["total_successes"]), reverse=True)
    return insights


@dataclass
class BotMetricsReport:
    role: str
    total_recommendations_generated: int = 0
    recommendations_selected: int = 0
    recommendations_succeeded: int = 0
    recommendations_failed: int = 0
    selection_rate: float = 0.0
    success_rate: float = 0.0
    avg_research_depth: float = 0.0
    highest_impact_pattern: str | None = None
    lowest_success_pattern: str | None = None
    cross_subordinate_insights: int = 0
    trend: TrendDirection = TrendDirection.STABLE
    last_outcome_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "role": self.role,
            "total_recommendations_generated": self.total_recommendations_generated,
            "recommendations_selected": self.recommendations_selected,
            "recommendations_succeeded": self.recommendations_succeeded,
            "recommendations_failed": self.recommendations_failed,
            "selection_rate": self.selection_rate,
            "success_rate": self.success_rate,
            "avg_research_depth": self.avg_research_depth,
            "highest_impact_pattern": self.highest_impact_pattern,
            "lowest_success_pattern": self.lowest_success_pattern,
            "cross_subordinate_insights": self.cross_subordinate_insights,
            "trend": self.trend.value,
            "last_outcome_at": self.last_outcome_at.isoformat() if self.last_outcome_at else None,
        }


def empty_metrics(role: str) -> BotMetricsReport:
    return BotMetricsReport(role=role)


def build_report(
    metrics: KnowledgeBotMetrics,
    records: Sequence[LearningRecord],
    snapshots: Sequence[KnowledgeBotMetricsSnapshot],
    constraints: SafetyConstraints = SAFETY_CONSTRAINTS,
) -> BotMetricsReport:
    summary = summarize_patterns(records)
    succeeded = metrics.recommendations_succeeded
    failed = metrics.recommendations_failed
    return BotMetricsReport(
        role=metrics.role,
        total_recommendations_generated=metrics.total_recommendations_generated,
        recommendations_selected=metrics.recommendations_selected,
        recommendations_succeeded=succeeded,
        recommendations_failed=failed,
        selection_rate=_ratio(
            metrics.recommendations_selected, metrics.total_recommendations_generated
        ),
        success_rate=_ratio(succeeded, succeeded + failed),
        avg_research_depth=metrics.avg_research_depth or 0.0,
        highest_impact_pattern=summary.highest_impact_pattern,
        lowest_success_pattern=summary.lowest_success_pattern,
        cross_subordinate_insights=summary.cross_subordinate_insights,
        trend=metrics_trend(snapshots, constraints),
        last_outcome_at=metrics.last_outcome_at,
    )


class InsightMiner:
    """Read-side queries for the reporting surface."""

    def __init__(
        self,
        session_factory: SessionFactory | None,
        constraints: SafetyConstraints = SAFETY_CONSTRAINTS,
    ) -> None:
        self._session_factory = session_factory
        self._constraints = constraints

    async def bot_metrics(self, bot_role: str) -> BotMetricsReport:
        session_factory = self._session_factory
        if session_factory is None:
            logger.warning("Store unavailable, returning empty metrics for %s", bot_role)
            return empty_metrics(bot_role)

        try:
            async with session_factory() as session:
                metrics = await db.get_bot_metrics(session, bot_role)
                if metrics is None:
                    return empty_metrics(bot_role)
                records = await db.get_learning_records(session, bot_role)
                snapshots = await db.get_metrics_snapshots(
                    session, bot_role, limit=SNAPSHOT_WINDOW
                )
        except STORE_ERRORS as exc:
            logger.error("Error loading metrics for %s: %s", bot_role, exc)
            return empty_metrics(bot_role)

        return build_report(metrics, records, snapshots, self._constraints)

    async def cross_subordinate_insights(self, bot_role: str) -> list[dict[str, Any]]:
        session_factory = self._session_factory
        if session_factory is None:
            logger.warning("Store unavailable, no insights for %s", bot_role)
            return []

        try:
            async with session_factory() as session:
                records = await db.get_learning_records(session, bot_role, min_successes=1)
        except STORE_ERRORS as exc:
            logger.error("Error loading insights for %s: %s", bot_role, exc)
            return []

        return cross_subordinate_insights(records)

    async def record_metrics_snapshot(self, bot_role: str, now: datetime) -> bool:
        """Append the bot's current selection and success rates to its history."""
        session_factory = self._session_factory
        if session_factory is None:
            logger.warning("Store unavailable, no snapshot for %s", bot_role)
            return False

        try:
            async with session_factory() as session:
                metrics = await db.get_bot_metrics(session, bot_role)
                if metrics is None:
                    logger.info("No metrics for %s yet, snapshot skipped", bot_role)
                    return False
                succeeded = metrics.recommendations_succeeded
                await db.add_metrics_snapshot(
                    session,
                    bot_role,
                    selection_rate=_ratio(
                        metrics.recommendations_selected, metrics.total_recommendations_generated
                    ),
                    success_rate=_ratio(succeeded, succeeded + metrics.recommendations_failed),
                    recorded_at=now,
                )
        except STORE_ERRORS as exc:
            logger.error("Error recording snapshot for %s: %s", bot_role, exc)
            return False
        return True
