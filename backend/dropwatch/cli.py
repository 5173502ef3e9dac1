"""DropWatch CLI: positioning-drop detection and corridor alerting for fleets.

Commands:
  init-db              create the database schema
  ingest               load a fix CSV and run the corridor pipeline
  recompute-baselines  rebuild every corridor baseline from traversal history
  corridors            list corridors with baselines and deviation
  alerts               list open (or all) alerts
  resolve-alert        close an alert so its slot may alert again
  status               database counts at a glance
  serve                run the HTTP API
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table


app = typer.Typer(
    name="dropwatch",
    help="Positioning-drop detection and corridor alerting for vehicle fleets.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_db_command():
    """Create all tables."""
    from dropwatch.database import init_db

    with console.status("[bold]Creating database..."):
        init_db()
    console.print("[green]Database ready.[/green]")


@app.command("ingest")
def ingest(
    csv_path: Path = typer.Argument(..., help="CSV with vehicle_id, ts, lat, lon[, speed, accuracy, heading]"),
    workers: Optional[int] = typer.Option(None, "--workers", "-w", help="Parallel vehicle lanes"),
):
    """Ingest a fix CSV: trips, drops, traversals, baselines and alerts."""
    from dropwatch.database import SessionLocal
    from dropwatch.modules.ingest import FixValidationError, PipelineConfig, ingest_fix_batch, load_fixes_csv

    if not csv_path.exists():
        console.print(f"[red]File not found: {csv_path}[/red]")
        raise typer.Exit(1)

    overrides = {"max_workers": workers} if workers else {}
    try:
        rows = load_fixes_csv(csv_path)
        with console.status(f"[bold]Ingesting {len(rows):,} fixes..."):
            summary = ingest_fix_batch(
                rows,
                session_factory=SessionLocal,
                config=PipelineConfig.from_settings(**overrides),
            )
    except FixValidationError as e:
        console.print(f"[red]Batch rejected: {e}[/red]")
        for err in e.errors[:10]:
            console.print(f"  [dim]{err}[/dim]")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    results = summary["results"]
    console.print(
        f"[green]Ingested {summary['fixes_received']:,} fixes[/green] "
        f"from {summary['vehicles']} vehicle(s)"
    )
    console.print(
        f"  Drops: {sum(r['drops_detected'] for r in results)}  "
        f"Traversals: {sum(r['traversals_recorded'] for r in results)}  "
        f"Alerts: {sum(r['alerts_created'] for r in results)}"
    )
    if summary["errors"]:
        console.print(f"[yellow]{len(summary['errors'])} segment(s) failed:[/yellow]")
        for err in summary["errors"]:
            console.print(f"  [dim]{err}[/dim]")
        raise typer.Exit(1)


@app.command("recompute-baselines")
def recompute_baselines():
    """Rebuild hourly and global baselines for every corridor."""
    from dropwatch.database import SessionLocal
    from dropwatch.modules.baseline_store import recompute_all_baselines

    db = SessionLocal()
    try:
        with console.status("[bold]Recomputing baselines..."):
            result = recompute_all_baselines(db)
        console.print(
            f"[green]Recomputed {result['corridors_processed']} corridors[/green] "
            f"({result['baselines_written']} baselines written)"
        )
        if result["errors"]:
            console.print(f"[yellow]{result['errors']} corridor(s) failed, see log[/yellow]")
    finally:
        db.close()


@app.command("corridors")
def corridors(
    sort: str = typer.Option("count", "--sort", help="count | deviation | median"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """List corridors with traversal counts, baselines and deviation."""
    from dropwatch.database import SessionLocal
    from dropwatch.modules.corridor_report import SORT_KEYS, format_duration, list_corridors

    if sort not in SORT_KEYS:
        console.print(f"[red]Unknown sort: {sort}[/red] [dim](use {', '.join(SORT_KEYS)})[/dim]")
        raise typer.Exit(1)

    db = SessionLocal()
    try:
        result = list_corridors(db, sort=sort, limit=limit)
    finally:
        db.close()

    if not result["corridors"]:
        console.print("[yellow]No corridors yet[/yellow]")
        return

    table = Table(title=f"Corridors ({result['total']})")
    table.add_column("ID", style="cyan")
    table.add_column("From")
    table.add_column("To")
    table.add_column("Dir")
    table.add_column("Count")
    table.add_column("Median")
    table.add_column("p95 km/h")
    table.add_column("Deviation")
    for row in result["corridors"]:
        deviation = row["deviation_formatted"]
        table.add_row(
            str(row["corridor_id"]),
            row["a_cell"],
            row["b_cell"],
            str(row["direction"]),
            str(row["count"]),
            format_duration(row["median_sec"]) if row["median_sec"] else "-",
            f"{row['p95_speed_kmh']:.1f}",
            f"{row['deviation_sign']}{deviation}" if deviation else "-",
        )
    console.print(table)


@app.command("alerts")
def alerts(
    all_alerts: bool = typer.Option(False, "--all", help="Include resolved alerts"),
    limit: int = typer.Option(50, "--limit", "-n"),
):
    """List alerts, newest first."""
    from dropwatch.database import SessionLocal
    from dropwatch.models.alert import Alert

    db = SessionLocal()
    try:
        q = db.query(Alert)
        if not all_alerts:
            q = q.filter(Alert.resolved_utc.is_(None))
        rows = q.order_by(Alert.created_utc.desc()).limit(limit).all()

        if not rows:
            console.print("[green]No open alerts.[/green]" if not all_alerts else "[dim]No alerts.[/dim]")
            return

        table = Table(title=f"Alerts ({len(rows)})")
        table.add_column("ID", style="cyan")
        table.add_column("Type")
        table.add_column("Severity")
        table.add_column("Corridor")
        table.add_column("Trip")
        table.add_column("Delta")
        table.add_column("Created")
        table.add_column("Resolved")
        colors = {"high": "red", "medium": "yellow", "low": "dim"}
        for a in rows:
            sev = a.severity.value
            table.add_row(
                str(a.alert_id),
                a.alert_type.value,
                f"[{colors[sev]}]{sev}[/{colors[sev]}]",
                str(a.corridor_id),
                str(a.trip_id),
                f"{a.delta_value:.1f}",
                str(a.created_utc)[:19],
                str(a.resolved_utc)[:19] if a.resolved_utc else "",
            )
        console.print(table)
    finally:
        db.close()


@app.command("resolve-alert")
def resolve_alert_command(alert_id: int = typer.Argument(..., help="Alert ID")):
    """Mark an alert resolved."""
    from dropwatch.database import SessionLocal
    from dropwatch.modules.alert_engine import resolve_alert

    db = SessionLocal()
    try:
        alert = resolve_alert(db, alert_id)
        if alert is None:
            console.print(f"[red]Alert {alert_id} not found[/red]")
            raise typer.Exit(1)
        db.commit()
        console.print(f"[green]Resolved alert {alert_id}[/green]")
    finally:
        db.close()


@app.command("status")
def status():
    """Show row counts for the main tables."""
    from dropwatch.database import SessionLocal
    from dropwatch.models import Alert, Corridor, Drop, GPSFix, Traversal, Trip, Vehicle

    db = SessionLocal()
    try:
        console.print("[bold]Data[/bold]")
        console.print(f"  Vehicles: {db.query(Vehicle).count():,}  Trips: {db.query(Trip).count():,}")
        console.print(f"  Fixes: {db.query(GPSFix).count():,}  Drops: {db.query(Drop).count():,}")
        console.print(f"  Corridors: {db.query(Corridor).count():,}  Traversals: {db.query(Traversal).count():,}")
        open_alerts = db.query(Alert).filter(Alert.resolved_utc.is_(None)).count()
        console.print(f"  Alerts: {db.query(Alert).count():,} ({open_alerts:,} open)")
    finally:
        db.close()


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
):
    """Run the HTTP API."""
    import uvicorn

    console.print(f"API running at [cyan]http://{host}:{port}[/cyan], press Ctrl+C to stop")
    uvicorn.run("dropwatch.main:app", host=host, port=port)


if __name__ == "__main__":
    app()
