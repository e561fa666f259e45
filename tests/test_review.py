import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from oversight import db
from oversight.models import CeoAlert, Escalation, TeamLeadReview
from oversight.review import ReviewAction, ReviewCycleController, ReviewStatus, decide
from oversight.scoring import STABLE_TREND, TrendDirection, TrendResult
from oversight.teams import TeamLeadProfile, TeamRoster

CTO = TeamLeadProfile(role="cto", team_id="tech", subordinates=("web_dev_lead", "qa_lead"))
CFO = TeamLeadProfile(
    role="cfo",
    team_id="finance",
    subordinates=("expense_tracking_lead",),
    consecutive_failures_threshold=2,
)
ADVISOR = TeamLeadProfile(
    role="advisor", team_id="advice", subordinates=("qa_lead",), amendment_authority=False
)
DECLINING = TrendResult(direction=TrendDirection.DECLINING, slope=-0.5)


def test_decide_failures_take_precedence() -> None:
    decision = decide(CTO, DECLINING, 0.1, 3)
    assert decision.action == ReviewAction.ESCALATION
    assert decision.reason == "3 consecutive task failures"


def test_decide_critical_score() -> None:
    decision = decide(CTO, STABLE_TREND, 0.2, 2)
    assert decision.action == ReviewAction.ESCALATION
    assert decision.reason == "Critical CoS score: 20.0%"


def test_decide_amendment_on_decline_or_warning() -> None:
    assert decide(CTO, DECLINING, 0.9, 0).action == ReviewAction.AMENDMENT
    assert decide(CTO, STABLE_TREND, 0.4, 0).action == ReviewAction.AMENDMENT
    assert decide(CTO, STABLE_TREND, 0.5, 0).action == ReviewAction.NONE


def test_decide_without_amendment_authority() -> None:
    assert decide(ADVISOR, DECLINING, 0.9, 0).action == ReviewAction.NONE


def test_decide_team_specific_threshold() -> None:
    assert decide(CFO, STABLE_TREND, 0.9, 2).action == ReviewAction.ESCALATION
    assert decide(CTO, STABLE_TREND, 0.9, 2).action == ReviewAction.NONE


@pytest.mark.asyncio
async def test_insufficient_data(session_factory, add_tasks, now) -> None:
    await add_tasks("web_dev_lead", ["failed"] * 4)
    controller = ReviewCycleController(TeamRoster([CTO]), session_factory)

    result = await controller.run_cycle(CTO, now)

    assert [r.status for r in result.reviews] == [ReviewStatus.INSUFFICIENT_DATA] * 2
    assert result.reviews[0].tasks_reviewed == 4
    async with session_factory() as session:
        assert await db.get_recent_reviews(session) == []


@pytest.mark.asyncio
async def test_consecutive_failures_escalate(session_factory, add_tasks, now) -> None:
    await add_tasks("web_dev_lead", ["failed", "rejected", "failed", "completed", "completed"])
    controller = ReviewCycleController(TeamRoster([CTO]), session_factory)

    result = await controller.run_cycle(CTO, now)
    review = result.reviews[0]

    assert review.action == ReviewAction.ESCALATION
    assert review.escalated
    assert review.escalation_reason == "3 consecutive task failures"
    assert review.consecutive_failures == 3
    assert review.persisted

    async with session_factory() as session:
        escalation = (await session.execute(select(Escalation))).scalar_one()
        alert = (await session.execute(select(CeoAlert))).scalar_one()
        logged = (await session.execute(select(TeamLeadReview))).scalar_one()

    assert escalation.from_role == "cto"
    assert escalation.subject_role == "web_dev_lead"
    assert escalation.target == "cos"
    assert escalation.status == "pending"
    assert "web_dev_lead" in alert.message
    assert logged.escalated
    assert logged.metrics == {"tasks_reviewed": 5, "consecutive_failures": 3}


@pytest.mark.asyncio
async def test_finance_escalates_after_two_failures(session_factory, add_tasks, now) -> None:
    await add_tasks("expense_tracking_lead", ["failed", "failed"] + ["completed"] * 4)
    controller = ReviewCycleController(TeamRoster([CFO]), session_factory)

    result = await controller.run_cycle(CFO, now)

    assert result.reviews[0].escalation_reason == "2 consecutive task failures"


@pytest.mark.asyncio
async def test_critical_score_escalates(session_factory, add_tasks, now) -> None:
    await add_tasks("web_dev_lead", ["queued"] + ["completed"] * 5)
    controller = ReviewCycleController(TeamRoster([CTO]), session_factory)

    review = (await controller.run_cycle(CTO, now)).reviews[0]

    assert review.cos_score == pytest.approx(0.2)
    assert review.escalation_reason == "Critical CoS score: 20.0%"


@pytest.mark.asyncio
async def test_decline_generates_amendment(session_factory, add_tasks, now) -> None:
    await add_tasks(
        "qa_lead",
        ["completed", "failed", "failed", "completed", "completed", "completed"],
        category="regression",
    )
    controller = ReviewCycleController(TeamRoster([CTO]), session_factory)

    review = (await controller.run_cycle(CTO, now)).reviews[1]

    assert review.trend.direction == TrendDirection.DECLINING
    assert review.action == ReviewAction.AMENDMENT
    assert review.amendment.saved
    assert review.amendment.trigger_pattern == "task_category:regression"
    assert not review.escalated

    async with session_factory() as session:
        logged = (await session.execute(select(TeamLeadReview))).scalar_one()
    assert logged.amendment_generated
    assert logged.amendment_id == review.amendment.id


@pytest.mark.asyncio
async def test_no_amendment_without_authority(session_factory, add_tasks, now) -> None:
    await add_tasks(
        "qa_lead", ["completed", "failed", "failed", "completed", "completed", "completed"]
    )
    controller = ReviewCycleController(TeamRoster([ADVISOR]), session_factory)

    review = (await controller.run_cycle(ADVISOR, now)).reviews[0]

    assert review.action == ReviewAction.NONE
    assert review.amendment is None
    assert review.persisted


@pytest.mark.asyncio
async def test_old_tasks_fall_outside_window(session_factory, add_tasks, now) -> None:
    await add_tasks("web_dev_lead", ["failed"] * 6)
    controller = ReviewCycleController(TeamRoster([CTO]), session_factory, window_days=30)

    review = (await controller.run_cycle(CTO, now.replace(year=now.year + 1))).reviews[0]

    assert review.status == ReviewStatus.INSUFFICIENT_DATA
    assert review.tasks_reviewed == 0


@pytest.mark.asyncio
async def test_one_failing_subordinate_does_not_abort_cycle(
    session_factory, add_tasks, now, monkeypatch
) -> None:
    await add_tasks("qa_lead", ["completed"] * 6)
    controller = ReviewCycleController(TeamRoster([CTO]), session_factory)
    original = controller.fetch_history

    async def flaky(factory, role, when):
        if role == "web_dev_lead":
            raise RuntimeError("store timeout")
        return await original(factory, role, when)

    monkeypatch.setattr(controller, "fetch_history", flaky)
    result = await controller.run_cycle(CTO, now)

    assert result.reviews[0].status == ReviewStatus.ERROR
    assert result.reviews[0].error == "store timeout"
    assert result.reviews[1].status == ReviewStatus.REVIEWED
    assert result.reviews[1].action == ReviewAction.NONE


@pytest.mark.asyncio
async def test_cycle_without_store(now) -> None:
    controller = ReviewCycleController(TeamRoster([CTO]), None)
    result = await controller.run_cycle(CTO, now)

    assert result.error == "Database unavailable"
    assert result.reviews == []


@pytest.mark.asyncio
async def test_run_all_concurrently_keys_by_team(now) -> None:
    controller = ReviewCycleController(TeamRoster([CTO, CFO]), None)
    results = await controller.run_all(now, concurrent=True)

    assert set(results) == {"tech", "finance"}
    assert results["finance"].team_lead == "cfo"


@pytest.mark.asyncio
async def test_run_all_sequential_with_store(session_factory, add_tasks, now) -> None:
    await add_tasks("expense_tracking_lead", ["failed", "failed"] + ["completed"] * 4)
    controller = ReviewCycleController(TeamRoster([CTO, CFO]), session_factory)

    results = await controller.run_all(now)

    assert results["finance"].reviews[0].escalated
    assert results["tech"].to_dict()["team_lead"] == "cto"


async def _failing_then_declining(add_tasks) -> None:
    await add_tasks("web_dev_lead", ["failed", "rejected", "failed", "completed", "completed"])
    await add_tasks(
        "qa_lead",
        ["completed", "failed", "failed", "completed", "completed", "completed"],
        category="regression",
    )


@pytest.mark.asyncio
async def test_missing_review_table_is_not_fatal(engine, session_factory, add_tasks, now) -> None:
    await _failing_then_declining(add_tasks)
    async with engine.begin() as conn:
        await conn.run_sync(TeamLeadReview.__table__.drop)
    controller = ReviewCycleController(TeamRoster([CTO]), session_factory)

    escalated, amended = (await controller.run_cycle(CTO, now)).reviews

    assert escalated.status == ReviewStatus.REVIEWED
    assert escalated.escalated
    assert escalated.error is None
    assert not escalated.persisted
    assert amended.status == ReviewStatus.REVIEWED
    assert amended.amendment.saved
    assert not amended.persisted

    async with session_factory() as session:
        escalation = (await session.execute(select(Escalation))).scalar_one()
    assert escalation.subject_role == "web_dev_lead"


@pytest.mark.asyncio
async def test_review_row_write_error_is_not_fatal(
    session_factory, add_tasks, now, monkeypatch
) -> None:
    await _failing_then_declining(add_tasks)

    async def locked(session, **kwargs):
        raise OperationalError("INSERT INTO team_lead_reviews", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "add_team_lead_review", locked)
    controller = ReviewCycleController(TeamRoster([CTO]), session_factory)

    escalated, amended = (await controller.run_cycle(CTO, now)).reviews

    assert escalated.action == ReviewAction.ESCALATION
    assert not escalated.persisted
    assert amended.action == ReviewAction.AMENDMENT
    assert amended.amendment.saved
    assert not amended.persisted


@pytest.mark.asyncio
async def test_escalation_decision_survives_dropped_connection(
    session_factory, add_tasks, now, monkeypatch
) -> None:
    await add_tasks("web_dev_lead", ["failed", "rejected", "failed", "completed", "completed"])

    async def dropped(session, **kwargs):
        raise ConnectionResetError(104, "Connection reset by peer")

    monkeypatch.setattr(db, "create_escalation", dropped)
    controller = ReviewCycleController(TeamRoster([CTO]), session_factory)

    review = (await controller.run_cycle(CTO, now)).reviews[0]

    assert review.status == ReviewStatus.REVIEWED
    assert review.escalated
    assert review.escalation_reason == "3 consecutive task failures"
    assert "Database unreachable" in review.error
    assert review.persisted


@pytest.mark.asyncio
async def test_recent_reviews(session_factory, add_tasks, now) -> None:
    await add_tasks("web_dev_lead", ["completed"] * 6)
    await add_tasks("expense_tracking_lead", ["failed", "failed"] + ["completed"] * 4)
    controller = ReviewCycleController(TeamRoster([CTO, CFO]), session_factory)
    await controller.run_all(now)

    finance = await controller.recent_reviews("cfo")

    assert [r.subordinate_role for r in finance] == ["expense_tracking_lead"]
    assert finance[0].escalated
    assert len(await controller.recent_reviews()) == 2
    assert await ReviewCycleController(TeamRoster([CTO]), None).recent_reviews() == []
