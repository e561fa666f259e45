import pytest
from sqlalchemy import func, select

from oversight import db
from oversight.amendments import (
    AmendmentSynthesizer,
    AmendmentType,
    build_amendment,
    distinct_failure_reasons,
    primary_failure_category,
)
from oversight.models import Amendment
from oversight.scoring import STABLE_TREND, TrendDirection, TrendResult

DECLINING = TrendResult(direction=TrendDirection.DECLINING, slope=-0.2)
SEVERE = TrendResult(direction=TrendDirection.DECLINING, slope=-0.3)


def test_nothing_to_amend_without_failures_or_decline(history, now) -> None:
    tasks = history(["completed"] * 6)
    assert build_amendment("cto", "qa_lead", STABLE_TREND, tasks, now) is None


def test_primary_category_prefers_metadata_and_first_seen_on_ties(make_task) -> None:
    failed = [
        make_task("failed", category="deploy"),
        make_task("failed", category="testing", metadata_={"category": "review"}),
        make_task("failed", category="deploy"),
        make_task("failed", metadata_={"category": "review"}),
        make_task("failed"),
    ]
    assert primary_failure_category(failed) == ("deploy", 2)
    assert primary_failure_category(failed[3:]) == ("review", 1)
    assert primary_failure_category([]) == ("general", 0)


def test_failure_reasons_deduplicated_and_capped(make_task) -> None:
    failed = [
        make_task("failed", failure_reason="timeout"),
        make_task("failed", failure_reason="timeout"),
        make_task("failed", metadata_={"failure_reason": "bad output"}),
        make_task("failed"),
        make_task("failed", failure_reason="flaky test"),
        make_task("failed", failure_reason="oom"),
    ]
    assert distinct_failure_reasons(failed) == ["timeout", "bad output", "flaky test"]


def test_severe_decline_builds_critical_amendment(history, now) -> None:
    tasks = history(
        ["failed", "failed", "completed", "completed", "completed", "completed"],
        category="deploy",
        failure_reason="rollback",
    )
    draft = build_amendment("cto", "devops_lead", SEVERE, tasks, now)

    assert draft.amendment_type == AmendmentType.PERFORMANCE_CRITICAL
    assert draft.trigger_pattern == "task_category:deploy"
    assert draft.instruction_delta.startswith("CRITICAL:")
    assert "rollback" in draft.instruction_delta
    assert not draft.auto_approved
    assert not draft.is_active
    assert draft.approval_status == "pending"

    guidance = draft.knowledge_mutation["performance_guidance"]["deploy"]
    assert guidance["failure_count"] == 2
    assert guidance["recommended_approach"] == "decomposition_with_checkpoints"
    assert guidance["generated_by"] == "team_lead_review"


def test_moderate_decline_and_low_score_wording(history, now) -> None:
    tasks = history(["failed", "completed", "completed", "completed", "completed"])

    moderate = build_amendment("cto", "qa_lead", DECLINING, tasks, now)
    assert moderate.amendment_type == AmendmentType.PERFORMANCE_IMPROVEMENT
    assert moderate.instruction_delta.startswith("ATTENTION:")

    stable = build_amendment("cto", "qa_lead", STABLE_TREND, tasks, now)
    assert stable.instruction_delta.startswith("IMPROVEMENT NEEDED:")
    assert stable.trigger_pattern == "task_category:general"


@pytest.mark.asyncio
async def test_synthesize_persists_pending_amendment(session_factory, history, now) -> None:
    tasks = history(["failed"] * 5, category="testing")
    draft = await AmendmentSynthesizer(session_factory).synthesize(
        "cto", "qa_lead", DECLINING, tasks, now
    )

    assert draft.saved
    assert draft.id is not None
    async with session_factory() as session:
        stored = await db.get_amendment(session, draft.id)
    assert stored.agent_role == "qa_lead"
    assert stored.created_by == "cto"
    assert stored.is_active is False
    assert stored.auto_approved is False
    assert stored.approval_status == "pending"
    assert stored.trigger_pattern == "task_category:testing"


@pytest.mark.asyncio
async def test_amendment_cap_blocks_eleventh(session_factory, history, now) -> None:
    async with session_factory() as session:
        session.add_all(
            Amendment(
                agent_role="qa_lead",
                amendment_type="performance_improvement",
                trigger_pattern=f"task_category:c{i}",
                instruction_delta="x",
                knowledge_mutation={},
                is_active=True,
                approval_status="approved",
            )
            for i in range(10)
        )

    draft = await AmendmentSynthesizer(session_factory).synthesize(
        "cto", "qa_lead", DECLINING, history(["failed"] * 5), now
    )

    assert draft.blocked
    assert not draft.saved
    assert draft.block_reason == "Max amendments reached (10)"
    async with session_factory() as session:
        total = await session.scalar(
            select(func.count(Amendment.id)).where(Amendment.agent_role == "qa_lead")
        )
    assert total == 10


@pytest.mark.asyncio
async def test_inactive_amendments_do_not_count_toward_cap(session_factory, history, now) -> None:
    synthesizer = AmendmentSynthesizer(session_factory)
    for _ in range(11):
        draft = await synthesizer.synthesize(
            "cto", "qa_lead", DECLINING, history(["failed"] * 5), now
        )
    assert draft.saved
    assert not draft.blocked


@pytest.mark.asyncio
async def test_synthesize_without_store(history, now) -> None:
    draft = await AmendmentSynthesizer(None).synthesize(
        "cto", "qa_lead", DECLINING, history(["failed"] * 5), now
    )
    assert draft.error == "Database unavailable"
    assert not draft.saved
