"""Main CLI entry point for oversight."""

import asyncio
import json
import logging
from datetime import UTC, datetime

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from . import __version__, db
from .config import settings
from .constraints import SAFETY_CONSTRAINTS
from .escalation import list_escalations, resolve
from .insights import InsightMiner
from .learning import LearningLedger
from .review import ReviewCycleController, ReviewCycleResult, ReviewStatus
from .teams import TeamRoster, load_roster

console = Console()

STATUS_STYLES = {
    ReviewStatus.REVIEWED: "green",
    ReviewStatus.INSUFFICIENT_DATA: "yellow",
    ReviewStatus.ERROR: "red",
}


def _configure_logging(level: str) -> None:
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


def _roster() -> TeamRoster:
    try:
        return load_roster(settings.team_config_path)
    except (OSError, ValueError) as exc:
        raise click.ClickException(f"Invalid team configuration: {exc}") from exc


def _now() -> datetime:
    return datetime.now(UTC)


def _print_json(data: object) -> None:
    console.print(json.dumps(data, indent=2, default=str))


def _print_cycle(result: ReviewCycleResult) -> None:
    if result.error:
        console.print(f"[red]{result.team_lead}: {result.error}[/red]")
        return

    table = Table(title=f"{result.team_lead} ({result.team_id}) {result.review_type} review")
    table.add_column("Subordinate", style="cyan")
    table.add_column("Status")
    table.add_column("Trend")
    table.add_column("CoS", justify="right")
    table.add_column("Action")
    table.add_column("Detail")

    for review in result.reviews:
        style = STATUS_STYLES[review.status]
        if review.escalated:
            detail = review.escalation_reason or ""
        elif review.amendment is not None:
            amendment = review.amendment
            detail = amendment.block_reason or amendment.error or amendment.trigger_pattern
        else:
            detail = review.error or f"{review.tasks_reviewed} tasks"

        table.add_row(
            review.subordinate_role,
            f"[{style}]{review.status.value}[/{style}]",
            review.trend.direction.value if review.trend else "-",
            f"{review.cos_score:.2f}" if review.cos_score is not None else "-",
            review.action.value,
            detail,
        )
    console.print(table)


@click.group()
@click.version_option(version=__version__)
@click.option("--log-level", default=None, help="Override OVERSIGHT_LOG_LEVEL")
def main(log_level: str | None) -> None:
    """Agent oversight CLI.

    Review subordinate agents, record amendment outcomes and inspect what the
    knowledge bots have learned.
    """
    _configure_logging(log_level or settings.log_level)


@main.command(name="init-db")
def init_db() -> None:
    """Create all tables (development only; use alembic elsewhere)."""
    asyncio.run(db.init_db())
    console.print("[green]Tables created[/green]")


@main.command(name="schema-check", help="Check DB schema readiness for current code.")
def schema_check() -> None:
    async def check() -> None:
        from sqlalchemy import inspect

        from .models import Base

        async with db.engine.connect() as conn:
            tables = set(await conn.run_sync(lambda c: inspect(c).get_table_names()))

        missing = set(Base.metadata.tables) - tables
        if missing:
            console.print(f"[red]Missing tables: {sorted(missing)}[/red]")
            console.print("Run: `uv run alembic upgrade head`")
            raise SystemExit(1)

        console.print("[green]Schema ready[/green]")

    asyncio.run(check())


@main.command()
def teams() -> None:
    """List team leads and their subordinates."""
    roster = _roster()

    table = Table(title="Team Leads")
    table.add_column("Role", style="cyan")
    table.add_column("Team")
    table.add_column("Cadence")
    table.add_column("Failure threshold", justify="right")
    table.add_column("Escalates to")
    table.add_column("Subordinates")

    for profile in roster.profiles:
        table.add_row(
            profile.role,
            profile.team_id,
            profile.review_cadence.value,
            str(profile.consecutive_failures_threshold),
            profile.escalation_target,
            ", ".join(profile.subordinates),
        )
    console.print(table)


@main.command()
def constraints() -> None:
    """Show the hardcoded safety constraints."""
    _print_json(SAFETY_CONSTRAINTS.describe())


# =============================================================================
# Reviews
# =============================================================================


@main.group()
def review() -> None:
    """Run team lead review cycles."""


@review.command(name="run")
@click.argument("team_lead")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def review_run(team_lead: str, as_json: bool) -> None:
    """Run one team lead's review cycle.

    TEAM_LEAD: Team lead role (e.g., cto)
    """
    roster = _roster()
    profile = roster.get(team_lead)
    if profile is None:
        raise click.ClickException(f"Unknown team lead: {team_lead}")

    controller = ReviewCycleController(roster, db.default_session_factory())
    result = asyncio.run(controller.run_cycle(profile, _now()))

    if as_json:
        _print_json(result.to_dict())
    else:
        _print_cycle(result)


@review.command(name="all")
@click.option("--concurrent", is_flag=True, help="Run team leads concurrently")
@click.option("--json", "as_json", is_flag=True, help="Print raw JSON")
def review_all(concurrent: bool, as_json: bool) -> None:
    """Run every team lead's review cycle."""
    controller = ReviewCycleController(_roster(), db.default_session_factory())
    results = asyncio.run(controller.run_all(_now(), concurrent=concurrent))

    if as_json:
        _print_json({team: r.to_dict() for team, r in results.items()})
        return
    for result in results.values():
        _print_cycle(result)


@review.command(name="history")
@click.option("--team-lead", default=None, help="Only reviews by this team lead")
@click.option("--limit", default=50, help="Number of reviews to show")
def review_history(team_lead: str | None, limit: int) -> None:
    """Show persisted review records, newest first."""
    controller = ReviewCycleController(_roster(), db.default_session_factory())
    rows = asyncio.run(controller.recent_reviews(team_lead, limit=limit))

    if not rows:
        console.print("[yellow]No reviews recorded[/yellow]")
        return

    table = Table(title="Team lead reviews")
    table.add_column("Date")
    table.add_column("Team lead", style="cyan")
    table.add_column("Subordinate")
    table.add_column("Trend")
    table.add_column("CoS", justify="right")
    table.add_column("Amendment")
    table.add_column("Escalated")

    for r in rows:
        table.add_row(
            r.review_date.strftime("%Y-%m-%d %H:%M"),
            r.team_lead_role,
            r.subordinate_role,
            r.trend_direction,
            f"{r.cos_score:.2f}",
            "yes" if r.amendment_generated else "no",
            "yes" if r.escalated else "no",
        )
    console.print(table)


# =============================================================================
# Learning
# =============================================================================


@main.group()
def learning() -> None:
    """Knowledge bot learning ledger."""


@learning.command(name="record-outcome")
@click.argument("amendment_id")
@click.option(
    "--succeeded/--failed", default=None, required=True, help="Whether the amendment worked"
)
@click.option("--before", "variance_before", type=float, required=True, help="Variance before")
@click.option("--after", "variance_after", type=float, required=True, help="Variance after")
def record_outcome(
    amendment_id: str, succeeded: bool | None, variance_before: float, variance_after: float
) -> None:
    """Record the evaluated outcome of an amendment."""
    if succeeded is None:
        raise click.UsageError("Pass --succeeded or --failed")
    ledger = LearningLedger(db.default_session_factory())
    updated = asyncio.run(
        ledger.record_outcome(amendment_id, succeeded, variance_before, variance_after, _now())
    )
    if updated:
        console.print(f"[green]Learning updated from amendment {amendment_id}[/green]")
    else:
        console.print(f"[yellow]No learning update for amendment {amendment_id}[/yellow]")


@learning.command(name="metrics")
@click.argument("bot_role")
def learning_metrics(bot_role: str) -> None:
    """Show aggregate metrics for a knowledge bot."""
    report = asyncio.run(InsightMiner(db.default_session_factory()).bot_metrics(bot_role))
    console.print(
        Panel(
            f"Generated: {report.total_recommendations_generated}\n"
            f"Selected: {report.recommendations_selected} ({report.selection_rate:.0%})\n"
            f"Succeeded: {report.recommendations_succeeded}\n"
            f"Failed: {report.recommendations_failed}\n"
            f"Success rate: {report.success_rate:.0%}\n"
            f"Trend: [cyan]{report.trend.value}[/cyan]\n"
            f"Highest impact pattern: {report.highest_impact_pattern or '-'}\n"
            f"Lowest success pattern: {report.lowest_success_pattern or '-'}\n"
            f"Cross-subordinate patterns: {report.cross_subordinate_insights}",
            title=f"Knowledge bot: {bot_role}",
        )
    )


@learning.command(name="insights")
@click.argument("bot_role")
def learning_insights(bot_role: str) -> None:
    """Show patterns that worked across subordinates."""
    miner = InsightMiner(db.default_session_factory())
    insights = asyncio.run(miner.cross_subordinate_insights(bot_role))

    if not insights:
        console.print("[yellow]No cross-subordinate insights yet[/yellow]")
        return

    table = Table(title=f"Cross-subordinate insights: {bot_role}")
    table.add_column("Pattern", style="cyan")
    table.add_column("Subordinates")
    table.add_column("Successes", justify="right")
    table.add_column("Avg impact", justify="right")
    table.add_column("Confidence", justify="right")

    for insight in insights:
        table.add_row(
            insight["targeting_pattern"],
            ", ".join(insight["subordinates"]),
            str(insight["total_successes"]),
            f"{insight['avg_impact']:.3f}",
            f"{insight['confidence_score']:.2f}",
        )
    console.print(table)


@learning.command(name="history")
@click.argument("bot_role")
@click.option("--limit", default=50, help="Number of recommendations to show")
def learning_history(bot_role: str, limit: int) -> None:
    """Show recent recommendations and their outcomes."""
    ledger = LearningLedger(db.default_session_factory())
    _print_json(asyncio.run(ledger.learning_history(bot_role, limit=limit)))


@learning.command(name="snapshot")
@click.argument("bot_role")
def learning_snapshot(bot_role: str) -> None:
    """Record a metrics snapshot for trend tracking."""
    miner = InsightMiner(db.default_session_factory())
    if asyncio.run(miner.record_metrics_snapshot(bot_role, _now())):
        console.print(f"[green]Snapshot recorded for {bot_role}[/green]")
    else:
        console.print(f"[yellow]No snapshot recorded for {bot_role}[/yellow]")


# =============================================================================
# Escalations
# =============================================================================


@main.group()
def escalations() -> None:
    """Escalations raised by team leads."""


@escalations.command(name="list")
@click.option("--status", "status_filter", default=None, help="Filter by status")
@click.option("--limit", default=50, help="Number of escalations to show")
def escalations_list(status_filter: str | None, limit: int) -> None:
    """List recent escalations."""

    rows = asyncio.run(list_escalations(db.default_session_factory(), status_filter, limit))

    if not rows:
        console.print("[yellow]No escalations found[/yellow]")
        return

    table = Table(title="Escalations")
    table.add_column("ID", style="cyan")
    table.add_column("From")
    table.add_column("Subject")
    table.add_column("Priority")
    table.add_column("Status")
    table.add_column("Reason")
    table.add_column("Created")

    for e in rows:
        table.add_row(
            e.id,
            e.from_role,
            e.subject_role,
            e.priority,
            e.status,
            e.reason[:60] + "..." if len(e.reason) > 60 else e.reason,
            e.created_at.strftime("%Y-%m-%d %H:%M") if e.created_at else "",
        )
    console.print(table)


@escalations.command(name="resolve")
@click.argument("escalation_id")
def escalations_resolve(escalation_id: str) -> None:
    """Mark an escalation resolved."""
    if not asyncio.run(resolve(db.default_session_factory(), escalation_id, _now())):
        raise click.ClickException(
            f"Escalation {escalation_id} not resolved (not found or store unavailable)"
        )
    console.print(f"[green]Escalation {escalation_id} resolved[/green]")


if __name__ == "__main__":
    main()
