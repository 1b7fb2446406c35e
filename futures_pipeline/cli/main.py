"""
CLI interface for the episode pipeline.

Provides command-line access to scheduling, manual generation, episode
status, daily spend and feedback.
"""

import asyncio
import logging
import sys
from dataclasses import replace
from datetime import date
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from futures_pipeline.config.loader import PipelineConfig, default_config, load_pipeline_config
from futures_pipeline.core.budget import resolve_policy
from futures_pipeline.core.errors import FeedbackRejected, NotFoundError
from futures_pipeline.core.feedback import FeedbackAggregator
from futures_pipeline.core.pipeline import EpisodePipeline, TickReport
from futures_pipeline.sdk.openai_client import OpenAIContentProvider
from futures_pipeline.storage.episodes import EpisodeStore
from futures_pipeline.storage.feedback import FeedbackRepository
from futures_pipeline.storage.ledger import CostLedger
from futures_pipeline.storage.models import EpisodeStatus, NoteScope, to_iso, utcnow
from futures_pipeline.storage.repository import ProjectRepository, initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

CONFIG_OPTION = typer.Option(None, "--config", "-c", help="Path to pipeline YAML config")
DB_OPTION = typer.Option(None, "--db", help="Override the SQLite database path")

STATUS_STYLES = {
    EpisodeStatus.PENDING: "yellow",
    EpisodeStatus.GENERATING: "cyan",
    EpisodeStatus.PUBLISHED: "green",
    EpisodeStatus.FAILED: "red",
}


def _load_config(config_path: Optional[str], db_path: Optional[str]) -> PipelineConfig:
    config = load_pipeline_config(config_path) if config_path else default_config()
    if db_path:
        config = replace(config, storage=replace(config.storage, db_path=db_path))
    return config


def _build_pipeline(config: PipelineConfig) -> EpisodePipeline:
    provider = OpenAIContentProvider(model=config.generation.model)
    return EpisodePipeline.from_config(config, provider)


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Log pipeline activity"),
):
    """Futures episode pipeline CLI."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if ctx.invoked_subcommand is None:
        console.print("Futures Pipeline - Use --help to see available commands")


@app.command()
def init(config_path: Optional[str] = CONFIG_OPTION, db_path: Optional[str] = DB_OPTION):
    """Initialize the pipeline database."""
    try:
        config = _load_config(config_path, db_path)
        initialize_schema(config.storage.db_path)
        console.print(f"[green]✓[/] Database initialized at {config.storage.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def tick(config_path: Optional[str] = CONFIG_OPTION, db_path: Optional[str] = DB_OPTION):
    """Run one scheduler pass: sweep, then generate every due episode."""
    try:
        pipeline = _build_pipeline(_load_config(config_path, db_path))
        report = asyncio.run(pipeline.tick())
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_tick(report)
    sys.exit(EXIT_CODE_PASS)


@app.command("generate-now")
def generate_now(
    project_id: str = typer.Argument(..., help="Project to generate an episode for"),
    config_path: Optional[str] = CONFIG_OPTION,
    db_path: Optional[str] = DB_OPTION,
):
    """Generate an episode immediately, outside the cadence."""
    try:
        pipeline = _build_pipeline(_load_config(config_path, db_path))
        episode = asyncio.run(pipeline.generate_now(project_id))
    except NotFoundError as e:
        console.print(f"[red]Not found:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    style = STATUS_STYLES[episode.status]
    console.print(f"Episode {episode.id}: [{style}]{episode.status.value}[/]")
    if episode.status == EpisodeStatus.FAILED:
        console.print(f"Reason: {episode.failure_reason} ({episode.failure_message})")
        sys.exit(EXIT_CODE_FAIL)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(
    episode_id: str = typer.Argument(..., help="Episode to inspect"),
    config_path: Optional[str] = CONFIG_OPTION,
    db_path: Optional[str] = DB_OPTION,
):
    """Show the lifecycle state of an episode."""
    try:
        config = _load_config(config_path, db_path)
        view = EpisodeStore(config.storage.db_path, config.storage.timeout_seconds).status(episode_id)
    except NotFoundError as e:
        console.print(f"[red]Not found:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    style = STATUS_STYLES[view.status]
    console.print(f"\n[bold]Episode {view.episode_id}[/bold]")
    console.print(f"Status: [{style}]{view.status.value}[/]")
    console.print(f"Scheduled for: {to_iso(view.scheduled_for)}")
    console.print(f"Attempts: {view.generation_attempts}")
    if view.failure_reason:
        console.print(f"Failure reason: {view.failure_reason}")
    if view.published_at:
        console.print(f"Published at: {to_iso(view.published_at)}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def spend(
    organization_id: str = typer.Argument(..., help="Organization to report on"),
    day: Optional[str] = typer.Option(None, "--day", "-d", help="UTC day as YYYY-MM-DD (default: today)"),
    config_path: Optional[str] = CONFIG_OPTION,
    db_path: Optional[str] = DB_OPTION,
):
    """Show an organization's spend for one UTC day."""
    try:
        config = _load_config(config_path, db_path)
        target = date.fromisoformat(day) if day else utcnow().date()
        db, timeout = config.storage.db_path, config.storage.timeout_seconds
        policy = resolve_policy(config.budget, ProjectRepository(db, timeout).get_organization(organization_id))
        state = CostLedger(db, timeout).daily_state(organization_id, target)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    table = Table(title=f"Spend for {organization_id} on {target.isoformat()}")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Total cost", _format_currency(state.total_cost))
    table.add_row("Generation cost", _format_currency(state.generation_cost))
    table.add_row("Chat cost", _format_currency(state.chat_cost))
    table.add_row("In flight", _format_currency(state.reserved_cost))
    table.add_row("Tokens", f"{state.total_tokens:,}")
    table.add_row("Episodes", str(state.episode_count))
    table.add_row("Daily ceiling", _format_currency(policy.daily_ceiling))
    console.print(table)
    if state.halted:
        console.print(f"[bold red]Generation halted:[/] {state.halted_reason}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def feedback(
    episode_id: str = typer.Argument(..., help="Published episode to rate"),
    user_id: str = typer.Option(..., "--user", "-u", help="Submitting user"),
    rating: Optional[int] = typer.Option(None, "--rating", "-r", help="Rating from 1 to 5"),
    note: Optional[str] = typer.Option(None, "--note", "-n", help="Free-text note"),
    general: bool = typer.Option(False, "--general", help="Apply to all future episodes, not just the next"),
    config_path: Optional[str] = CONFIG_OPTION,
    db_path: Optional[str] = DB_OPTION,
):
    """Submit feedback on a published episode."""
    try:
        config = _load_config(config_path, db_path)
        db, timeout = config.storage.db_path, config.storage.timeout_seconds
        episode = EpisodeStore(db, timeout).get(episode_id)
        aggregator = FeedbackAggregator(FeedbackRepository(db, timeout))
        created = aggregator.submit(
            episode,
            user_id,
            rating=rating,
            note=note,
            scope=NoteScope.GENERAL if general else NoteScope.NEXT_EPISODE,
        )
    except (NotFoundError, FeedbackRejected) as e:
        console.print(f"[red]Feedback rejected:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    applies_to = "all future episodes" if created.scope == NoteScope.GENERAL else "the next episode"
    console.print(f"[green]✓[/] Feedback recorded for {applies_to}")
    console.print(f"Note: {created.id}")
    sys.exit(EXIT_CODE_PASS)


@app.command("dismiss-feedback")
def dismiss_feedback(
    note_id: str = typer.Argument(..., help="Pending feedback note to withdraw"),
    config_path: Optional[str] = CONFIG_OPTION,
    db_path: Optional[str] = DB_OPTION,
):
    """Withdraw a pending feedback note before an episode reads it."""
    try:
        config = _load_config(config_path, db_path)
        aggregator = FeedbackAggregator(FeedbackRepository(config.storage.db_path, config.storage.timeout_seconds))
        dismissed = aggregator.dismiss(note_id)
    except (NotFoundError, FeedbackRejected) as e:
        console.print(f"[red]Dismiss rejected:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"[green]✓[/] Feedback {dismissed.id} dismissed")
    sys.exit(EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    return f"£{amount:,.4f}"


def _display_tick(report: TickReport):
    console.print("\n[bold]Scheduler tick[/bold]")
    console.print("-" * 40)
    console.print(f"Stale claims released: {len(report.sweep.released)}")
    console.print(f"Slots expired: {len(report.sweep.expired)}")

    if not report.due:
        console.print("\n[dim]No episodes due.[/]")
        return

    table = Table()
    table.add_column("Project")
    table.add_column("Episode")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Detail")
    for outcome in report.outcomes:
        episode = outcome.episode
        style = STATUS_STYLES[episode.status]
        if outcome.retry_at is not None:
            detail = f"retry at {to_iso(outcome.retry_at)}"
        elif outcome.skipped:
            detail = outcome.message
        else:
            detail = outcome.reason.value if outcome.reason else ""
        table.add_row(
            episode.project_id,
            episode.id,
            f"[{style}]{episode.status.value}[/]",
            str(episode.generation_attempts),
            detail,
        )
    if report.outcomes:
        console.print(table)
    for due, message in report.errors:
        console.print(f"[red]Error:[/] project {due.project.id} slot {to_iso(due.slot)}: {message}")
    console.print(
        f"Published {report.published}, retrying {report.retrying}, "
        f"failed {report.failed}, skipped {report.skipped}, errors {len(report.errors)}"
    )


if __name__ == "__main__":
    app()
