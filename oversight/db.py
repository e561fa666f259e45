"""Async database connection and store operations for the oversight service."""

import logging
from collections.abc import AsyncGenerator, Callable
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from datetime import datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import settings
from .errors import (
    CONNECTION_ERRORS,
    SchemaNotInitializedError,
    StoreUnavailableError,
    is_schema_missing_error,
    schema_not_initialized_message,
)
from .models import (
    Amendment,
    Base,
    CeoAlert,
    Escalation,
    KnowledgeBotMetrics,
    KnowledgeBotMetricsSnapshot,
    LearningRecord,
    Recommendation,
    Task,
    TeamLeadReview,
)

SessionFactory = Callable[[], AbstractAsyncContextManager[AsyncSession]]

# Everything a store-backed operation catches to degrade instead of raising
STORE_ERRORS = (
    SQLAlchemyError,
    SchemaNotInitializedError,
    StoreUnavailableError,
    *CONNECTION_ERRORS,
)

logger = logging.getLogger(__name__)

# Create async engine and session factory
engine = create_async_engine(settings.async_database_url, echo=False, pool_pre_ping=True)
async_session_factory = async_sessionmaker(engine, expire_on_commit=False)


async def init_db() -> None:
    """Create all tables (for development/testing)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def session_scope(factory: async_sessionmaker[AsyncSession]) -> SessionFactory:
    """Wrap a sessionmaker so each use commits on success and rolls back on error."""

    @asynccontextmanager
    async def scope() -> AsyncGenerator[AsyncSession]:
        async with factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as exc:
                try:
                    await session.rollback()
                except (SQLAlchemyError, *CONNECTION_ERRORS) as rollback_exc:
                    logger.debug("Rollback failed after %r: %s", exc, rollback_exc)
                if isinstance(exc, SQLAlchemyError) and is_schema_missing_error(exc):
                    raise SchemaNotInitializedError(
                        schema_not_initialized_message(exc)
                    ) from exc
                if isinstance(exc, CONNECTION_ERRORS):
                    raise StoreUnavailableError(f"Database unreachable: {exc}") from exc
                raise

    return scope


get_session = session_scope(async_session_factory)


def default_session_factory() -> SessionFactory | None:
    """The configured store, or None when the store is disabled."""
    return get_session if settings.store_enabled else None


# =============================================================================
# Task Operations
# =============================================================================


async def get_subordinate_task_history(
    session: AsyncSession,
    subordinate_role: str,
    since: datetime,
    limit: int = 100,
) -> list[Task]:
    """Tasks assigned to a subordinate since a cutoff, newest first."""
    result = await session.execute(
        select(Task)
        .where(Task.assigned_to == subordinate_role, Task.created_at >= since)
        .order_by(Task.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# =============================================================================
# Amendment Operations
# =============================================================================


async def count_active_amendments(session: AsyncSession, agent_role: str) -> int:
    """Count active amendments targeting a subordinate."""
    result = await session.execute(
        select(func.count(Amendment.id)).where(
            Amendment.agent_role == agent_role, Amendment.is_active.is_(True)
        )
    )
    return int(result.scalar_one() or 0)


async def create_amendment(
    session: AsyncSession,
    *,
    agent_role: str,
    created_by: str | None,
    amendment_type: str,
    trigger_pattern: str,
    instruction_delta: str,
    knowledge_mutation: dict[str, Any],
    source_pattern: dict[str, Any] | None = None,
) -> Amendment:
    """Insert an amendment awaiting approval.

    Amendments authored here are never active or auto-approved on creation.
    """
    amendment = Amendment(
        agent_role=agent_role,
        created_by=created_by,
        amendment_type=amendment_type,
        trigger_pattern=trigger_pattern,
        instruction_delta=instruction_delta,
        knowledge_mutation=knowledge_mutation,
        source_pattern=source_pattern or {},
        approval_status="pending",
        is_active=False,
        auto_approved=False,
        evaluation_status="pending",
    )
    session.add(amendment)
    await session.flush()
    return amendment


async def get_amendment(session: AsyncSession, amendment_id: str) -> Amendment | None:
    result = await session.execute(select(Amendment).where(Amendment.id == amendment_id))
    return result.scalar_one_or_none()


# =============================================================================
# Recommendation Operations
# =============================================================================


async def create_recommendation(
    session: AsyncSession,
    knowledge_bot_role: str,
    subordinate_role: str,
    targeting_pattern: str,
    recommendation_text: str | None = None,
    expected_impact: str = "medium",
) -> Recommendation:
    """Record a generated recommendation."""
    rec = Recommendation(
        knowledge_bot_role=knowledge_bot_role,
        subordinate_role=subordinate_role,
        targeting_pattern=targeting_pattern,
        recommendation_text=recommendation_text,
        expected_impact=expected_impact,
        status="generated",
    )
    session.add(rec)
    await session.flush()
    return rec


async def get_recommendation(
    session: AsyncSession, recommendation_id: str
) -> Recommendation | None:
    result = await session.execute(
        select(Recommendation).where(Recommendation.id == recommendation_id)
    )
    return result.scalar_one_or_none()


async def get_recommendation_by_amendment(
    session: AsyncSession, amendment_id: str
) -> Recommendation | None:
    """Get the recommendation an amendment was promoted from, if any."""
    result = await session.execute(
        select(Recommendation).where(Recommendation.amendment_id == amendment_id)
    )
    return result.scalars().first()


async def claim_recommendation_outcome(
    session: AsyncSession,
    recommendation_id: str,
    *,
    succeeded: bool,
    impact: float,
    variance_before: float,
    variance_after: float,
    recorded_at: datetime,
) -> bool:
    """Write outcome fields unless an outcome was already recorded.

    Returns False when another call got there first.
    """
    result = await session.execute(
        update(Recommendation)
        .where(
            Recommendation.id == recommendation_id,
            Recommendation.outcome_recorded_at.is_(None),
        )
        .values(
            outcome_succeeded=succeeded,
            outcome_impact=impact,
            variance_before=variance_before,
            variance_after=variance_after,
            outcome_recorded_at=recorded_at,
        )
    )
    return result.rowcount == 1


async def select_recommendation(
    session: AsyncSession,
    rec: Recommendation,
    amendment_id: str,
    selected_at: datetime,
) -> Recommendation:
    """Link a recommendation to the amendment it became."""
    rec.status = "selected"
    rec.amendment_id = amendment_id
    rec.selected_at = selected_at
    await session.flush()
    return rec


async def get_recommendations_for_bot(
    session: AsyncSession, knowledge_bot_role: str, limit: int = 50
) -> list[Recommendation]:
    result = await session.execute(
        select(Recommendation)
        .where(Recommendation.knowledge_bot_role == knowledge_bot_role)
        .order_by(Recommendation.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


# =============================================================================
# Learning Operations
# =============================================================================


async def get_learning_record(
    session: AsyncSession,
    knowledge_bot_role: str,
    subordinate_role: str,
    targeting_pattern: str,
) -> LearningRecord | None:
    result = await session.execute(
        select(LearningRecord).where(
            LearningRecord.knowledge_bot_role == knowledge_bot_role,
            LearningRecord.subordinate_role == subordinate_role,
            LearningRecord.targeting_pattern == targeting_pattern,
        )
    )
    return result.scalar_one_or_none()


async def get_learning_records(
    session: AsyncSession,
    knowledge_bot_role: str,
    *,
    subordinate_role: str | None = None,
    min_successes: int = 0,
) -> list[LearningRecord]:
    """Learning records for a bot, optionally narrowed to one subordinate."""
    query = select(LearningRecord).where(LearningRecord.knowledge_bot_role == knowledge_bot_role)
    if subordinate_role is not None:
        query = query.where(LearningRecord.subordinate_role == subordinate_role)
    if min_successes > 0:
        query = query.where(LearningRecord.successful_recommendations >= min_successes)
    # Stable order so pattern ties resolve the same way every run
    query = query.order_by(LearningRecord.created_at, LearningRecord.targeting_pattern)

    result = await session.execute(query)
    return list(result.scalars().all())


async def create_learning_record(
    session: AsyncSession,
    *,
    knowledge_bot_role: str,
    subordinate_role: str,
    targeting_pattern: str,
    total: int,
    successful: int,
    failed: int,
    avg_impact: float,
    confidence: float,
    updated_at: datetime,
) -> LearningRecord:
    record = LearningRecord(
        knowledge_bot_role=knowledge_bot_role,
        subordinate_role=subordinate_role,
        targeting_pattern=targeting_pattern,
        total_recommendations=total,
        successful_recommendations=successful,
        failed_recommendations=failed,
        avg_impact=avg_impact,
        confidence_score=confidence,
        last_updated_at=updated_at,
    )
    session.add(record)
    await session.flush()
    return record


# =============================================================================
# Knowledge Bot Metrics Operations
# =============================================================================


async def get_bot_metrics(session: AsyncSession, role: str) -> KnowledgeBotMetrics | None:
    result = await session.execute(
        select(KnowledgeBotMetrics).where(KnowledgeBotMetrics.role == role)
    )
    return result.scalar_one_or_none()


async def create_bot_metrics(session: AsyncSession, role: str) -> KnowledgeBotMetrics:
    """Insert a zeroed metrics row. Raises IntegrityError if the role exists."""
    metrics = KnowledgeBotMetrics(
        role=role,
        total_recommendations_generated=0,
        recommendations_selected=0,
        recommendations_succeeded=0,
        recommendations_failed=0,
    )
    session.add(metrics)
    await session.flush()
    return metrics


async def increment_bot_metrics(
    session: AsyncSession,
    role: str,
    *,
    generated: int = 0,
    selected: int = 0,
    succeeded: int = 0,
    failed: int = 0,
    last_outcome_at: datetime | None = None,
) -> bool:
    """Atomically bump counters on an existing metrics row."""
    values: dict[str, Any] = {
        "total_recommendations_generated": KnowledgeBotMetrics.total_recommendations_generated
        + generated,
        "recommendations_selected": KnowledgeBotMetrics.recommendations_selected + selected,
        "recommendations_succeeded": KnowledgeBotMetrics.recommendations_succeeded + succeeded,
        "recommendations_failed": KnowledgeBotMetrics.recommendations_failed + failed,
    }
    if last_outcome_at is not None:
        values["last_outcome_at"] = last_outcome_at

    result = await session.execute(
        update(KnowledgeBotMetrics).where(KnowledgeBotMetrics.role == role).values(**values)
    )
    return result.rowcount == 1


async def get_metrics_snapshots(
    session: AsyncSession, role: str, limit: int = 10
) -> list[KnowledgeBotMetricsSnapshot]:
    """Most recent metric snapshots for a bot, newest first."""
    result = await session.execute(
        select(KnowledgeBotMetricsSnapshot)
        .where(KnowledgeBotMetricsSnapshot.role == role)
        .order_by(KnowledgeBotMetricsSnapshot.recorded_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def add_metrics_snapshot(
    session: AsyncSession,
    role: str,
    *,
    selection_rate: float,
    success_rate: float,
    recorded_at: datetime,
) -> KnowledgeBotMetricsSnapshot:
    snapshot = KnowledgeBotMetricsSnapshot(
        role=role,
        selection_rate=selection_rate,
        success_rate=success_rate,
        recorded_at=recorded_at,
    )
    session.add(snapshot)
    await session.flush()
    return snapshot


# =============================================================================
# Escalation Operations
# =============================================================================


async def create_escalation(
    session: AsyncSession,
    *,
    from_role: str,
    target: str,
    subject_role: str,
    reason: str,
    recommendation: str | None = None,
    priority: str = "HIGH",
    context: dict[str, Any] | None = None,
) -> Escalation:
    escalation = Escalation(
        from_role=from_role,
        target=target,
        subject_role=subject_role,
        reason=reason,
        recommendation=recommendation,
        priority=priority,
        status="pending",
        context=context or {},
    )
    session.add(escalation)
    await session.flush()
    return escalation


async def create_ceo_alert(
    session: AsyncSession,
    *,
    alert_type: str,
    message: str,
    severity: str = "HIGH",
    metrics: dict[str, Any] | None = None,
) -> CeoAlert:
    alert = CeoAlert(
        alert_type=alert_type,
        severity=severity,
        message=message,
        metrics=metrics or {},
        status="active",
    )
    session.add(alert)
    await session.flush()
    return alert


async def get_escalation(session: AsyncSession, escalation_id: str) -> Escalation | None:
    result = await session.execute(select(Escalation).where(Escalation.id == escalation_id))
    return result.scalar_one_or_none()


async def list_escalations(
    session: AsyncSession, status: str | None = None, limit: int = 50
) -> list[Escalation]:
    query = select(Escalation).order_by(Escalation.created_at.desc()).limit(limit)
    if status:
        query = query.where(Escalation.status == status)
    result = await session.execute(query)
    return list(result.scalars().all())


async def resolve_escalation(
    session: AsyncSession, escalation: Escalation, resolved_at: datetime
) -> Escalation:
    """Mark an escalation resolved. This is the only change an escalation allows."""
    escalation.status = "resolved"
    escalation.resolved_at = resolved_at
    return escalation


# =============================================================================
# Review Audit Operations
# =============================================================================


async def add_team_lead_review(
    session: AsyncSession,
    *,
    team_lead_role: str,
    subordinate_role: str,
    review_type: str,
    trend_direction: str,
    trend_slope: float,
    cos_score: float,
    amendment_id: str | None,
    amendment_generated: bool,
    escalated: bool,
    escalation_reason: str | None,
    metrics: dict[str, Any],
    review_date: datetime,
) -> TeamLeadReview:
    review = TeamLeadReview(
        team_lead_role=team_lead_role,
        subordinate_role=subordinate_role,
        review_type=review_type,
        trend_direction=trend_direction,
        trend_slope=trend_slope,
        cos_score=cos_score,
        amendment_generated=amendment_generated,
        amendment_id=amendment_id,
        escalated=escalated,
        escalation_reason=escalation_reason,
        metrics=metrics,
        review_date=review_date,
    )
    session.add(review)
    await session.flush()
    return review


async def get_recent_reviews(
    session: AsyncSession, team_lead_role: str | None = None, limit: int = 50
) -> list[TeamLeadReview]:
    query = select(TeamLeadReview).order_by(TeamLeadReview.review_date.desc()).limit(limit)
    if team_lead_role:
        query = query.where(TeamLeadReview.team_lead_role == team_lead_role)
    result = await session.execute(query)
    return list(result.scalars().all())
