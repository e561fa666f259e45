"""SQLAlchemy models for the oversight database."""

from datetime import datetime
from typing import Any
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, MappedColumn, mapped_column
from sqlalchemy.sql import func

# JSONB on PostgreSQL, plain JSON elsewhere
JSONType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all models."""

    type_annotation_map = {
        dict[str, Any]: JSONType,
    }


def _uuid_pk() -> MappedColumn[str]:
    return mapped_column(Uuid(as_uuid=False), primary_key=True, default=lambda: str(uuid4()))


# =============================================================================
# EXECUTION PIPELINE (read-only here)
# =============================================================================


class Task(Base):
    """Work item executed by a subordinate agent."""

    __tablename__ = "tasks"

    id: Mapped[str] = _uuid_pk()
    title: Mapped[str | None] = mapped_column(String, nullable=True)
    assigned_to: Mapped[str] = mapped_column(String, nullable=False, index=True)
    status: Mapped[str] = mapped_column(String, default="queued")
    quality_score: Mapped[float | None] = mapped_column(Float, nullable=True)  # 0-100
    due_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    category: Mapped[str | None] = mapped_column(String, nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", JSONType, default=dict)


# =============================================================================
# AMENDMENTS & RECOMMENDATIONS
# =============================================================================


class Amendment(Base):
    """Corrective knowledge-layer instruction targeting one subordinate."""

    __tablename__ = "amendments"

    id: Mapped[str] = _uuid_pk()
    agent_role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    created_by: Mapped[str | None] = mapped_column(String, nullable=True)
    amendment_type: Mapped[str] = mapped_column(String, nullable=False)
    trigger_pattern: Mapped[str] = mapped_column(String, nullable=False)
    instruction_delta: Mapped[str] = mapped_column(Text, nullable=False)
    knowledge_mutation: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    source_pattern: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    approval_status: Mapped[str] = mapped_column(String, default="pending")
    is_active: Mapped[bool] = mapped_column(Boolean, default=False)
    auto_approved: Mapped[bool] = mapped_column(Boolean, default=False)
    evaluation_status: Mapped[str] = mapped_column(String, default="pending")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Recommendation(Base):
    """Knowledge bot suggestion, optionally promoted to an amendment."""

    __tablename__ = "recommendations"

    id: Mapped[str] = _uuid_pk()
    knowledge_bot_role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    subordinate_role: Mapped[str] = mapped_column(String, nullable=False)
    targeting_pattern: Mapped[str] = mapped_column(String, nullable=False)
    recommendation_text: Mapped[str | None] = mapped_column(Text, nullable=True)
    expected_impact: Mapped[str] = mapped_column(String, default="medium")
    status: Mapped[str] = mapped_column(String, default="generated")
    amendment_id: Mapped[str | None] = mapped_column(
        Uuid(as_uuid=False), ForeignKey("amendments.id", ondelete="SET NULL"), nullable=True
    )
    selected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    outcome_succeeded: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    outcome_impact: Mapped[float | None] = mapped_column(Float, nullable=True)
    variance_before: Mapped[float | None] = mapped_column(Float, nullable=True)
    variance_after: Mapped[float | None] = mapped_column(Float, nullable=True)
    outcome_recorded_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# =============================================================================
# LEARNING LEDGER
# =============================================================================


class LearningRecord(Base):
    """Running outcome statistics per (bot, subordinate, pattern)."""

    __tablename__ = "knowledge_bot_learning"

    id: Mapped[str] = _uuid_pk()
    knowledge_bot_role: Mapped[str] = mapped_column(String, nullable=False)
    subordinate_role: Mapped[str] = mapped_column(String, nullable=False)
    targeting_pattern: Mapped[str] = mapped_column(String, nullable=False)
    total_recommendations: Mapped[int] = mapped_column(Integer, default=0)
    successful_recommendations: Mapped[int] = mapped_column(Integer, default=0)
    failed_recommendations: Mapped[int] = mapped_column(Integer, default=0)
    avg_impact: Mapped[float] = mapped_column(Float, default=0.0)
    confidence_score: Mapped[float] = mapped_column(Float, default=0.0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    last_updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    __table_args__ = (
        UniqueConstraint("knowledge_bot_role", "subordinate_role", "targeting_pattern"),
    )


class KnowledgeBotMetrics(Base):
    """Aggregate counters for one knowledge bot."""

    __tablename__ = "knowledge_bot_metrics"

    id: Mapped[str] = _uuid_pk()
    role: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    total_recommendations_generated: Mapped[int] = mapped_column(Integer, default=0)
    recommendations_selected: Mapped[int] = mapped_column(Integer, default=0)
    recommendations_succeeded: Mapped[int] = mapped_column(Integer, default=0)
    recommendations_failed: Mapped[int] = mapped_column(Integer, default=0)
    avg_research_depth: Mapped[float] = mapped_column(Float, default=0.0)
    last_outcome_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class KnowledgeBotMetricsSnapshot(Base):
    """Periodic copy of a bot's rates, read for trend detection."""

    __tablename__ = "knowledge_bot_metrics_history"

    id: Mapped[str] = _uuid_pk()
    role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    selection_rate: Mapped[float] = mapped_column(Float, default=0.0)
    success_rate: Mapped[float] = mapped_column(Float, default=0.0)
    recorded_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


# =============================================================================
# ESCALATIONS & AUDIT
# =============================================================================


class Escalation(Base):
    """Threshold breach routed to a higher authority."""

    __tablename__ = "escalations"

    id: Mapped[str] = _uuid_pk()
    from_role: Mapped[str] = mapped_column(String, nullable=False)
    target: Mapped[str] = mapped_column(String, default="cos")
    subject_role: Mapped[str] = mapped_column(String, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False)
    recommendation: Mapped[str | None] = mapped_column(Text, nullable=True)
    priority: Mapped[str] = mapped_column(String, default="HIGH")
    status: Mapped[str] = mapped_column(String, default="pending")
    context: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class CeoAlert(Base):
    """Human-visible alert feed mirroring escalations."""

    __tablename__ = "ceo_alerts"

    id: Mapped[str] = _uuid_pk()
    alert_type: Mapped[str] = mapped_column(String, nullable=False)
    severity: Mapped[str] = mapped_column(String, default="HIGH")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    metrics: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    status: Mapped[str] = mapped_column(String, default="active")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class TeamLeadReview(Base):
    """Audit row for one subordinate review."""

    __tablename__ = "team_lead_reviews"

    id: Mapped[str] = _uuid_pk()
    team_lead_role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    subordinate_role: Mapped[str] = mapped_column(String, nullable=False, index=True)
    review_type: Mapped[str] = mapped_column(String, nullable=False)
    trend_direction: Mapped[str] = mapped_column(String, nullable=False)
    trend_slope: Mapped[float] = mapped_column(Float, default=0.0)
    cos_score: Mapped[float] = mapped_column(Float, default=0.0)
    amendment_generated: Mapped[bool] = mapped_column(Boolean, default=False)
    amendment_id: Mapped[str | None] = mapped_column(Uuid(as_uuid=False), nullable=True)
    escalated: Mapped[bool] = mapped_column(Boolean, default=False)
    escalation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    metrics: Mapped[dict[str, Any]] = mapped_column(JSONType, default=dict)
    review_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
