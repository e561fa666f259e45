"""Escalation of threshold breaches to a higher authority."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime

from . import db
from .db import STORE_ERRORS, SessionFactory
from .models import Escalation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EscalationResult:
    escalated: bool
    escalation_id: str | None = None
    error: str | None = None


async def escalate(
    session_factory: SessionFactory | None,
    team_lead_role: str,
    subordinate_role: str,
    reason: str,
    target: str = "cos",
) -> EscalationResult:
    """Record an escalation plus a matching alert.

    The decision to escalate stands even when the write fails; the failure is
    logged and returned in ``error``.
    """
    logger.warning(
        "ESCALATION: %s escalating %s to %s - %s", team_lead_role, subordinate_role, target, reason
    )

    if session_factory is None:
        return EscalationResult(escalated=True, error="Database unavailable")

    try:
        async with session_factory() as session:
            escalation = await db.create_escalation(
                session,
                from_role=team_lead_role,
                target=target,
                subject_role=subordinate_role,
                reason=f"Team Lead escalation for {subordinate_role}: {reason}",
                recommendation=f"Review {subordinate_role} performance and consider intervention",
                priority="HIGH",
                context={
                    "escalation_type": "team_lead_review",
                    "subordinate_role": subordinate_role,
                    "original_reason": reason,
                },
            )
            await db.create_ceo_alert(
                session,
                alert_type="team_lead_escalation",
                severity="HIGH",
                message=f"{team_lead_role} escalated {subordinate_role}: {reason}",
                metrics={
                    "team_lead": team_lead_role,
                    "subordinate": subordinate_role,
                    "reason": reason,
                },
            )
            escalation_id = escalation.id
    except STORE_ERRORS as exc:
        logger.error("Error creating escalation for %s: %s", subordinate_role, exc)
        return EscalationResult(escalated=True, error=str(exc))

    return EscalationResult(escalated=True, escalation_id=escalation_id)


async def resolve(
    session_factory: SessionFactory | None, escalation_id: str, now: datetime
) -> bool:
    """Move a pending escalation to resolved.

    Returns False if it does not exist or the store could not be updated.
    """
    if session_factory is None:
        logger.warning("Store unavailable, cannot resolve escalation %s", escalation_id)
        return False

    try:
        async with session_factory() as session:
            escalation = await db.get_escalation(session, escalation_id)
            if escalation is None:
                logger.info("Escalation %s not found", escalation_id)
                return False
            if escalation.status != "resolved":
                await db.resolve_escalation(session, escalation, now)
    except STORE_ERRORS as exc:
        logger.error("Error resolving escalation %s: %s", escalation_id, exc)
        return False
    return True


async def list_escalations(
    session_factory: SessionFactory | None, status: str | None = None, limit: int = 50
) -> list[Escalation]:
    """Most recent escalations, optionally filtered by status."""
    if session_factory is None:
        logger.warning("Store unavailable, no escalations to list")
        return []

    try:
        async with session_factory() as session:
            return await db.list_escalations(session, status, limit)
    except STORE_ERRORS as exc:
        logger.error("Error listing escalations: %s", exc)
        return []
