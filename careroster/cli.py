"""CareRoster CLI.

Commands:
- init: Initialize database schema
- generate: Materialize one patient's schedule through an end date
- generate-all: Materialize every active template (rolling horizon by default)
- balance: Show an authorization's unit balance
- rebuild-balances: Recompute cached authorization totals from the ledger
- web serve: Run the JSON API
"""

from __future__ import annotations

import asyncio
from datetime import date, datetime
from uuid import UUID

import typer
from rich.console import Console
from rich.table import Table

from careroster.config import get_config
from careroster.core.errors import CareRosterError
from careroster.core.logging import configure_logging
from careroster.db.connection import close_db, get_engine, get_session
from careroster.db.models import Base
from careroster.ledger.service import AuthorizationLedger
from careroster.scheduling.materializer import ScheduleMaterializer, horizon_end

app = typer.Typer(
    name="careroster",
    help="CareRoster - recurring home-visit scheduling and authorization units",
    no_args_is_help=True,
)

web_cli = typer.Typer(help="Web API")
app.add_typer(web_cli, name="web")

console = Console()


def _parse_date(value: str | None) -> date | None:
    if value is None:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise typer.BadParameter(f"Expected YYYY-MM-DD, got {value!r}") from exc


def _run(factory):
    """Run an async command body, disposing the engine before the loop closes."""

    async def _inner():
        try:
            return await factory()
        finally:
            await close_db()

    return asyncio.run(_inner())


@app.callback()
def main() -> None:
    configure_logging()


@app.command()
def init(
    drop: bool = typer.Option(False, "--drop", help="Drop existing tables"),
):
    """Initialize database schema."""
    config = get_config()
    console.print(f"[bold]Initializing database:[/bold] {config.db.url}")

    async def _init():
        engine = get_engine()
        async with engine.begin() as conn:
            if drop:
                console.print("[yellow]Dropping existing tables...[/yellow]")
                await conn.run_sync(Base.metadata.drop_all)
            console.print("[green]Creating tables...[/green]")
            await conn.run_sync(Base.metadata.create_all)
        await close_db()

    asyncio.run(_init())
    console.print("[bold green]✓[/bold green] Database initialized")


@app.command()
def generate(
    patient_id: str = typer.Argument(..., help="Patient UUID"),
    end_date: str = typer.Option(..., "--end", help="Last date to generate (YYYY-MM-DD)"),
    today: str | None = typer.Option(None, "--today", help="Start date for first generation"),
):
    """Materialize a patient's active template through END."""
    end = _parse_date(end_date)

    async def _generate():
        async with get_session() as session:
            return await ScheduleMaterializer(session).generate(
                UUID(patient_id), end, today=_parse_date(today)
            )

    try:
        summary = _run(_generate)
    except CareRosterError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    if summary.is_noop:
        console.print(f"[yellow]Already generated through {summary.generated_through}[/yellow]")
        return

    console.print(
        f"[bold green]✓[/bold green] {summary.created} occurrences created "
        f"({summary.start_date} → {summary.end_date}), {summary.skipped_existing} already existed"
    )
    if summary.failures:
        table = Table(title="Skipped dates")
        table.add_column("Date")
        table.add_column("Reason")
        for failure in summary.failures:
            table.add_row(failure.event_date.isoformat(), failure.reason)
        console.print(table)


@app.command(name="generate-all")
def generate_all(
    end_date: str | None = typer.Option(None, "--end", help="Defaults to today + horizon"),
):
    """Materialize every active template."""
    end = _parse_date(end_date) or horizon_end()

    async def _generate_all():
        async with get_session() as session:
            return await ScheduleMaterializer(session).generate_all(end)

    summaries = _run(_generate_all)

    table = Table(title=f"Generation through {end}")
    table.add_column("Patient")
    table.add_column("Created", justify="right")
    table.add_column("Existing", justify="right")
    table.add_column("Failures", justify="right")
    for summary in summaries:
        table.add_row(
            str(summary.patient_id),
            str(summary.created),
            str(summary.skipped_existing),
            str(len(summary.failures)),
        )
    console.print(table)


@app.command()
def balance(
    authorization_id: str = typer.Argument(..., help="Authorization UUID"),
):
    """Show an authorization's ledger-derived unit balance."""

    async def _balance():
        async with get_session() as session:
            return await AuthorizationLedger(session).balance(UUID(authorization_id))

    try:
        result = _run(_balance)
    except CareRosterError as e:
        console.print(f"[red]✗[/red] {e}")
        raise typer.Exit(code=1)

    table = Table(title=f"Authorization {result.authorization_no}")
    table.add_column("Metric")
    table.add_column("Units", justify="right")
    table.add_row("Authorized", str(result.max_units))
    table.add_row("Used", str(result.total_used))
    table.add_row("Missed", str(result.total_missed))
    table.add_row("Remaining", str(result.total_remaining))
    if result.is_overdrawn:
        table.add_row("[red]Overdrawn[/red]", f"[red]{result.overdrawn_by}[/red]")
    console.print(table)


@app.command(name="rebuild-balances")
def rebuild_balances():
    """Recompute cached authorization totals from the ledger."""

    async def _rebuild():
        async with get_session() as session:
            return await AuthorizationLedger(session).rebuild_projections()

    drifted = _run(_rebuild)
    console.print(f"[bold green]✓[/bold green] {drifted} authorization totals corrected")


@web_cli.command("serve")
def web_serve(
    host: str = typer.Option("0.0.0.0", help="Host to bind"),
    port: int = typer.Option(8001, help="Port to bind"),
    reload: bool = typer.Option(False, help="Enable autoreload (dev only)"),
):
    """Run the FastAPI JSON API."""
    import uvicorn

    typer.echo(f"Starting CareRoster API on http://{host}:{port}")
    uvicorn.run("careroster.web.app:app", host=host, port=port, reload=reload, workers=1)


if __name__ == "__main__":
    app()
