"""
Corrective amendment synthesis from failure evidence.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any

from . import db
from .constraints import SAFETY_CONSTRAINTS, SafetyConstraints
from .db import STORE_ERRORS, SessionFactory
from .models import Task
from .scoring import TrendResult, is_failure

logger = logging.getLogger(__name__)

DEFAULT_CATEGORY = "general"
MAX_FAILURE_REASONS = 3
SOURCE = "team_lead_review"


class AmendmentType(StrEnum):
    PERFORMANCE_IMPROVEMENT = "performance_improvement"
    PERFORMANCE_CRITICAL = "performance_critical"


@dataclass(frozen=True)
class AmendmentDraft:
    """An amendment as synthesized, plus what happened when it was persisted."""

    agent_role: str
    created_by: str
    amendment_type: AmendmentType
    trigger_pattern: str
    primary_category: str
    instruction_delta: str
    knowledge_mutation: dict[str, Any]
    source_pattern: dict[str, Any]
    approval_status: str = "pending"
    is_active: bool = False
    auto_approved: bool = False
    evaluation_status: str = "pending"
    id: str | None = None
    saved: bool = False
    blocked: bool = False
    block_reason: str | None = None
    error: str | None = None
    failure_count: int = 0
    reasons: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_role": self.agent_role,
            "amendment_type": self.amendment_type.value,
            "trigger_pattern": self.trigger_pattern,
            "instruction_delta": self.instruction_delta,
            "auto_approved": self.auto_approved,
            "approval_status": self.approval_status,
            "is_active": self.is_active,
            "saved": self.saved,
            "blocked": self.blocked,
            "block_reason": self.block_reason,
            "error": self.error,
        }


def task_category(task: Task) -> str:
    metadata = task.metadata_ or {}
    return metadata.get("category") or task.category or DEFAULT_CATEGORY


def failure_reason(task: Task) -> str | None:
    metadata = task.metadata_ or {}
    return metadata.get("failure_reason") or task.failure_reason


def primary_failure_category(failed_tasks: Sequence[Task]) -> tuple[str, int]:
    """Category with the most failures; ties go to the first seen."""
    counts = Counter(task_category(t) for t in failed_tasks)
    if not counts:
        return DEFAULT_CATEGORY, 0
    # most_common keeps insertion order among equal counts
    return counts.most_common(1)[0]


def distinct_failure_reasons(
    failed_tasks: Sequence[Task], limit: int = MAX_FAILURE_REASONS
) -> list[str]:
    reasons: list[str] = []
    for task in failed_tasks:
        reason = failure_reason(task)
        if reason and reason not in reasons:
            reasons.append(reason)
            if len(reasons) == limit:
                break
    return reasons


def is_severe(trend: TrendResult, constraints: SafetyConstraints = SAFETY_CONSTRAINTS) -> bool:
    return trend.slope <= constraints.TREND_THRESHOLDS.SEVERE_DECLINE


def generate_instruction_delta(
    trend: TrendResult,
    category: str,
    reasons: Sequence[str],
    constraints: SafetyConstraints = SAFETY_CONSTRAINTS,
) -> str:
    issues = "; ".join(reasons) or "unspecified"

    if is_severe(trend, constraints):
        return (
            f"CRITICAL: Performance declining severely in {category} tasks. "
            f"Recent issues: {issues}. "
            "Break tasks into smaller steps, verify each component before proceeding, "
            "and request assistance if uncertain."
        )

    if trend.declining:
        return (
            f"ATTENTION: Performance declining in {category} tasks. "
            f"Common issues: {issues}. "
            "Apply extra verification before task completion."
        )

    return (
        f"IMPROVEMENT NEEDED: Focus on {category} task quality. "
        "Review approach and verify deliverables against requirements."
    )


def recommended_approach(
    trend: TrendResult, constraints: SafetyConstraints = SAFETY_CONSTRAINTS
) -> str:
    if is_severe(trend, constraints):
        return "decomposition_with_checkpoints"
    if trend.declining:
        return "enhanced_verification"
    return "standard_review"


def build_amendment(
    team_lead_role: str,
    subordinate_role: str,
    trend: TrendResult,
    history: Sequence[Task],
    now: datetime,
    constraints: SafetyConstraints = SAFETY_CONSTRAINTS,
) -> AmendmentDraft | None:
    """Draft an amendment from a task history, or None when nothing needs amending."""
    failed_tasks = [t for t in history if is_failure(t.status)]
    if not failed_tasks and not trend.declining:
        return None

    category, failure_count = primary_failure_category(failed_tasks)
    reasons = distinct_failure_reasons(failed_tasks)
    amendment_type = (
        AmendmentType.PERFORMANCE_CRITICAL
        if is_severe(trend, constraints)
        else AmendmentType.PERFORMANCE_IMPROVEMENT
    )

    return AmendmentDraft(
        agent_role=subordinate_role,
        created_by=team_lead_role,
        amendment_type=amendment_type,
        trigger_pattern=f"task_category:{category}",
        primary_category=category,
        instruction_delta=generate_instruction_delta(trend, category, reasons, constraints),
        knowledge_mutation={
            "performance_guidance": {
                category: {
                    "trend_direction": trend.direction.value,
                    "trend_slope": trend.slope,
                    "failure_count": failure_count,
                    "recommended_approach": recommended_approach(trend, constraints),
                    "generated_at": now.isoformat(),
                    "generated_by": SOURCE,
                }
            }
        },
        source_pattern={"source": SOURCE, "trend": trend.to_dict()},
        failure_count=failure_count,
        reasons=reasons,
    )


class AmendmentSynthesizer:
    """Drafts amendments and persists them under the per-subordinate cap."""

    def __init__(
        self,
        session_factory: SessionFactory | None,
        constraints: SafetyConstraints = SAFETY_CONSTRAINTS,
    ) -> None:
        self._session_factory = session_factory
        self._constraints = constraints

    async def synthesize(
        self,
        team_lead_role: str,
        subordinate_role: str,
        trend: TrendResult,
        history: Sequence[Task],
        now: datetime,
    ) -> AmendmentDraft | None:
        draft = build_amendment(
            team_lead_role, subordinate_role, trend, history, now, self._constraints
        )
        if draft is None:
            return None

        if self._session_factory is None:
            logger.warning("Store unavailable, amendment for %s not persisted", subordinate_role)
            return replace(draft, error="Database unavailable")

        cap = self._constraints.MAX_AMENDMENTS_PER_SUBORDINATE
        try:
            async with self._session_factory() as session:
                active = await db.count_active_amendments(session, subordinate_role)
                if active >= cap:
                    logger.warning(
                        "Amendment limit reached for %s (%d active)", subordinate_role, active
                    )
                    return replace(
                        draft,
                        blocked=True,
                        block_reason=f"Max amendments reached ({cap})",
                    )

                amendment = await db.create_amendment(
                    session,
                    agent_role=draft.agent_role,
                    created_by=draft.created_by,
                    amendment_type=draft.amendment_type.value,
                    trigger_pattern=draft.trigger_pattern,
                    instruction_delta=draft.instruction_delta,
                    knowledge_mutation=draft.knowledge_mutation,
                    source_pattern=draft.source_pattern,
                )
                amendment_id = amendment.id
        except STORE_ERRORS as exc:
            logger.error("Error saving amendment for %s: %s", subordinate_role, exc)
            return replace(draft, error=str(exc))

        logger.info("Amendment generated for %s: %s", subordinate_role, draft.trigger_pattern)
        return replace(draft, id=amendment_id, saved=True)
