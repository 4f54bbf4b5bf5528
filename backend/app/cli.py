"""SafeRoute CLI — crime-risk-aware routing backend.

Commands:
  init-db                — create database tables
  status                 — database and risk index summary
  recompute-risk         — recompute region risk indexes (all or one region)
  expire                 — expire stale collaborative occurrences
  quota                  — map provider quota usage
  traffic-cache-cleanup  — drop traffic segments stored under outdated conditions
  geocode                — resolve an address through the provider gateway
  serve                  — run the HTTP API
"""
from __future__ import annotations

import typer
from typing import Optional
from rich.console import Console
from rich.table import Table

from app.errors import SafeRouteError


app = typer.Typer(
    name="saferoute",
    help="Crime-risk-aware routing backend.",
    no_args_is_help=True,
    rich_markup_mode="rich",
)
console = Console()


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("init-db")
def init_database():
    """Create all database tables."""
    from app.database import init_db

    with console.status("[bold]Creating database..."):
        init_db()
    console.print("[green]Database ready.[/green]")


@app.command("status")
def status():
    """Show region, occurrence and risk index counts."""
    from app.database import SessionLocal
    from app.models.base import OccurrenceStatusEnum
    from app.models.occurrence import Occurrence
    from app.models.region import Region
    from app.models.risk_index import RiskIndex
    from app.modules.risk_scoring import load_scoring_config, high_risk_threshold

    db = SessionLocal()
    try:
        regions = db.query(Region).count()
        active = db.query(Occurrence).filter(Occurrence.status == OccurrenceStatusEnum.ACTIVE).count()
        indexed = db.query(RiskIndex).count()
        high = db.query(RiskIndex).filter(RiskIndex.value >= high_risk_threshold(load_scoring_config())).count()

        console.print("[bold]Data[/bold]")
        console.print(
            f"  Regions: {'[green]' + str(regions) + ' loaded[/green]' if regions else '[yellow]none loaded[/yellow]'}"
        )
        console.print(f"  Active occurrences: {active:,}")
        console.print(f"  Risk indexes: {indexed:,} ([red]{high} high risk[/red])")
        if regions and indexed < regions:
            console.print(
                f"\n[yellow]{regions - indexed} regions have no risk index yet. "
                f"Run [cyan]saferoute recompute-risk[/cyan].[/yellow]"
            )
    finally:
        db.close()


@app.command("recompute-risk")
def recompute_risk(
    region: Optional[int] = typer.Option(None, "--region", help="Only recompute this region id"),
    batch_size: Optional[int] = typer.Option(None, "--batch-size", help="Regions per batch"),
):
    """Recompute region risk indexes from active occurrences."""
    from app.database import SessionLocal
    from app.modules.risk_scoring import RiskIndexEngine

    db = SessionLocal()
    try:
        engine = RiskIndexEngine(db)
        if region is not None:
            try:
                index = engine.recalculate(region)
            except SafeRouteError as e:
                console.print(f"[red]{e.message}[/red]")
                raise typer.Exit(1)
            console.print(
                f"[green]Region {region}: risk {index.value:.2f}[/green] "
                f"({index.occurrence_count} occurrences)"
            )
            return
        with console.status("[bold]Recomputing risk indexes..."):
            result = engine.recalculate_all(batch_size=batch_size)
        console.print(
            f"[green]Recomputed {result['processed']}/{result['total']} regions[/green]"
            + (f"  [red]{result['failed']} failed: {result['failed_region_ids']}[/red]" if result["failed"] else "")
        )
        if result["failed"]:
            raise typer.Exit(1)
    finally:
        db.close()


@app.command("expire")
def expire(
    batch_size: int = typer.Option(100, "--batch-size", help="Occurrences per batch"),
):
    """Expire collaborative occurrences past their expires_at."""
    from app.database import SessionLocal
    from app.modules.job_queue import get_job_queue
    from app.modules.occurrence_lifecycle import expire_occurrences

    db = SessionLocal()
    try:
        with console.status("[bold]Expiring occurrences..."):
            result = expire_occurrences(db, batch_size=batch_size, jobs=get_job_queue())
        console.print(
            f"[green]Processed {result['processed']}[/green]: "
            f"{result['expired']} expired, {result['preserved']} preserved"
        )
    finally:
        db.close()


@app.command("quota")
def quota():
    """Show map provider usage against monthly quotas."""
    from app.modules.provider_gateway import get_gateway

    stats = get_gateway().statistics()
    table = Table(title=f"Provider quota (primary: {stats['primary']}, fallback: {stats['fallback'] or '—'})")
    table.add_column("Provider", style="cyan")
    table.add_column("Month", justify="right")
    table.add_column("Today", justify="right")
    table.add_column("Quota", justify="right")
    table.add_column("Usage", justify="right")
    table.add_column("Cost (USD)", justify="right")
    table.add_column("State")
    for name, row in stats["providers"].items():
        if row["exhausted"]:
            state = "[red]exhausted[/red]"
        elif row["throttled"]:
            state = "[yellow]throttled[/yellow]"
        else:
            state = "[green]ok[/green]"
        table.add_row(
            name,
            f"{row['monthly_calls']:,}",
            f"{row['daily_calls']:,}",
            f"{row['monthly_quota']:,}",
            f"{row['usage_percent']:.1f}%",
            f"{row['cost_usd']:.2f}",
            state,
        )
    console.print(table)


@app.command("traffic-cache-cleanup")
def traffic_cache_cleanup():
    """Drop cached traffic segments whose time-of-day conditions changed."""
    from app.modules.traffic_cache import TrafficSegmentCache
    from app.utils.cache import get_cache

    cache = TrafficSegmentCache(get_cache())
    removed = cache.cleanup_expired_cache()
    stats = cache.stats()
    console.print(
        f"[green]Removed {removed} stale segments[/green] "
        f"({stats['cached_segments']} remaining, current ttl {stats['current_ttl']}s)"
    )


@app.command("geocode")
def geocode(
    query: str = typer.Argument(..., help="Address or place to look up"),
):
    """Resolve an address to coordinates (up to 5 matches)."""
    from app.modules.geocoding import GeocodingService
    from app.modules.provider_gateway import get_gateway
    from app.utils.cache import get_cache

    try:
        addresses = GeocodingService(get_gateway(), get_cache()).geocode(query)
    except SafeRouteError as e:
        console.print(f"[red]Geocoding failed: {e.message}[/red]")
        raise typer.Exit(1)
    if not addresses:
        console.print(f"[yellow]No results for '{query}'[/yellow]")
        return

    table = Table(title=f"Results for '{query}'")
    table.add_column("#", style="cyan")
    table.add_column("Address")
    table.add_column("Latitude", justify="right")
    table.add_column("Longitude", justify="right")
    for i, address in enumerate(addresses, 1):
        table.add_row(
            str(i),
            address.formatted_address,
            f"{address.coordinates.latitude:.6f}",
            f"{address.coordinates.longitude:.6f}",
        )
    console.print(table)


@app.command("serve")
def serve(
    host: str = typer.Option("127.0.0.1", "--host"),
    port: int = typer.Option(8000, "--port"),
    reload: bool = typer.Option(False, "--reload", help="Reload on code changes (development)"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    console.print(f"API running at [cyan]http://{host}:{port}/api/v1[/cyan] — press Ctrl+C to stop")
    uvicorn.run("app.main:app", host=host, port=port, reload=reload)
