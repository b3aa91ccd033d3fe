"""recunlock CLI - operator commands for the unlock engine.

Commands:
- init: Create database tables
- register: Load generated recommendations for a scan from JSON
- status: Show a scan's progress snapshot
- list: List a scan's recommendations
- complete / skip: Mark a recommendation done or opt out
- unlock: Try to unlock the next batch
- validate: Check a recommendation against observed page elements
- sweep: Run due replacements for every scan
- force-replace: Run one scan's replacement now
"""

from __future__ import annotations

import asyncio
import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from recunlock.config import get_config
from recunlock.core.logging import configure_logging
from recunlock.db.connection import close_db, init_db
from recunlock.errors import UnlockEngineError
from recunlock.models import ProgressSnapshot, RecommendationDraft, UnlockRejected
from recunlock.service import UnlockService

app = typer.Typer(
    name="recunlock",
    help="recunlock - progressive recommendation unlock engine",
    no_args_is_help=True,
)

console = Console()


@app.callback()
def main(
    log_level: str | None = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
):
    """Configure logging before any command runs."""
    try:
        config = get_config()
    except KeyError:
        # No DATABASE_URL yet; logging falls back to the environment
        configure_logging(log_level)
        return
    configure_logging(log_level or config.log_level, config.log_format)


def _run(coro_factory):
    """Run an async command body and dispose the engine afterwards."""

    async def _wrapped():
        try:
            return await coro_factory()
        finally:
            await close_db()

    try:
        return asyncio.run(_wrapped())
    except UnlockEngineError as exc:
        console.print(f"[red]✗[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _print_progress(snapshot: ProgressSnapshot) -> None:
    table = Table(title=f"Scan {snapshot.scan_id} progress")
    table.add_column("Scope")
    table.add_column("Total", justify="right")
    table.add_column("Active", justify="right")
    table.add_column("Completed", justify="right")
    table.add_column("Locked", justify="right")

    table.add_row("all", str(snapshot.total), str(snapshot.active), str(snapshot.completed), str(snapshot.locked))
    for name, counts in (("site-wide", snapshot.site_wide), ("page-specific", snapshot.page_specific)):
        table.add_row(name, str(counts.total), str(counts.active), str(counts.completed), str(counts.locked))

    console.print(table)
    console.print(
        f"in progress: {snapshot.in_progress}  verified: {snapshot.verified}  "
        f"skipped: {snapshot.skipped}  site-wide complete: {snapshot.site_wide_complete}"
    )


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")
    _run(lambda: init_db(drop=drop))
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def register(
    file: Path = typer.Argument(..., exists=True, readable=True, help="JSON file from the generator"),
):
    """Register generated recommendations for a scan.

    Expected JSON: {"scan_id": 1, "user_id": 7, "recommendations": [{...}, ...]}
    """
    payload = json.loads(file.read_text())
    drafts = [RecommendationDraft.model_validate(item) for item in payload["recommendations"]]

    snapshot = _run(
        lambda: UnlockService().register_scan(int(payload["scan_id"]), int(payload["user_id"]), drafts)
    )
    console.print(f"[bold green]✓[/bold green] Registered {len(drafts)} recommendations")
    _print_progress(snapshot)


@app.command()
def status(scan_id: int = typer.Argument(..., help="Scan ID")):
    """Show a scan's progress snapshot."""
    _print_progress(_run(lambda: UnlockService().get_progress(scan_id)))


@app.command(name="list")
def list_cmd(
    scan_id: int = typer.Argument(..., help="Scan ID"),
    active_only: bool = typer.Option(False, "--active", help="Only active/in-progress"),
):
    """List a scan's recommendations."""
    service = UnlockService()
    if active_only:
        records = _run(lambda: service.list_active(scan_id))
    else:
        records = _run(lambda: service.list_recommendations(scan_id)).recommendations

    table = Table(title=f"Scan {scan_id} recommendations")
    table.add_column("ID", justify="right")
    table.add_column("Batch", justify="right")
    table.add_column("State")
    table.add_column("Validation")
    table.add_column("%", justify="right")
    table.add_column("Category")
    table.add_column("Recommendation")
    for rec in records:
        table.add_row(
            str(rec.id),
            str(rec.batch_number),
            rec.unlock_state.value,
            rec.validation_status.value if rec.validation_status else "-",
            str(rec.progress_percentage),
            rec.category,
            rec.recommendation_text[:60],
        )
    console.print(table)


@app.command()
def complete(recommendation_id: int = typer.Argument(..., help="Recommendation ID")):
    """Mark a recommendation as completed."""
    snapshot = _run(lambda: UnlockService().mark_complete(recommendation_id))
    console.print(f"[bold green]✓[/bold green] Recommendation {recommendation_id} completed")
    _print_progress(snapshot)


@app.command()
def skip(
    recommendation_id: int = typer.Argument(..., help="Recommendation ID"),
    force: bool = typer.Option(False, "--force", help="Admin opt-out, ignores cooldown"),
):
    """Skip a recommendation."""
    snapshot = _run(lambda: UnlockService().skip_recommendation(recommendation_id, force=force))
    console.print(f"[bold green]✓[/bold green] Recommendation {recommendation_id} skipped")
    _print_progress(snapshot)


@app.command()
def unlock(scan_id: int = typer.Argument(..., help="Scan ID")):
    """Unlock the next batch for a scan."""
    result = _run(lambda: UnlockService().unlock_next(scan_id))

    if isinstance(result, UnlockRejected):
        style = "yellow" if result.deferred else "red"
        console.print(f"[{style}]✗ {result.reason.value}[/{style}]: {result.message}")
        raise typer.Exit(code=2)

    console.print(
        f"[bold green]✓[/bold green] Unlocked {result.unlocked_count} recommendations "
        f"in batch {result.batch_number}"
    )
    if result.daily_limit_reached:
        console.print("[yellow]⚠[/yellow] Daily unlock limit now reached")
    _print_progress(result.progress)


@app.command()
def validate(
    recommendation_id: int = typer.Argument(..., help="Recommendation ID"),
    element: list[str] = typer.Option([], "--element", "-e", help="Observed page element"),
    findings_file: Path | None = typer.Option(
        None, "--findings", exists=True, readable=True, help="JSON list/object of observed elements"
    ),
):
    """Validate a recommendation against observed page elements."""
    findings: object = list(element)
    if findings_file is not None:
        findings = json.loads(findings_file.read_text())

    outcome = _run(lambda: UnlockService().validate_recommendation(recommendation_id, findings))
    console.print(
        f"[bold]{outcome.outcome.value}[/bold] ({outcome.completion_percentage}%) "
        f"state {outcome.previous_state.value} -> "
        f"{outcome.proposed_state.value if outcome.proposed_state else 'unchanged'} "
        f"(applied: {outcome.applied})"
    )
    if outcome.missing_elements:
        console.print(f"  missing: {', '.join(outcome.missing_elements)}", style="dim")


@app.command()
def sweep():
    """Run due replacements across all scans."""
    replaced = _run(lambda: UnlockService().run_replacement_sweep())
    console.print(f"[bold green]✓[/bold green] Replaced {len(replaced)} recommendations")


@app.command(name="force-replace")
def force_replace(scan_id: int = typer.Argument(..., help="Scan ID")):
    """Replace stale recommendations for one scan now."""
    report = _run(lambda: UnlockService().force_replacement(scan_id))
    console.print(
        f"[bold green]✓[/bold green] Replaced {report.replaced_count} recommendations; "
        f"next replacement {report.next_replacement_date:%Y-%m-%d %H:%M}"
    )


if __name__ == "__main__":
    app()
