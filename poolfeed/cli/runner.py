# poolfeed/cli/runner.py

"""Operator CLI commands: ingest, serve, mark-bad, renormalize."""

import asyncio
import json
import logging
import sys
from dataclasses import asdict

from rich.console import Console
from rich.table import Table

from poolfeed.config.settings import Settings
from poolfeed.filters.quality_filter import QualityFilter
from poolfeed.models.listing import Marketplace
from poolfeed.services.fetch_gate import FetchGate
from poolfeed.services.ingestion_runner import IngestionReport, IngestionRunner
from poolfeed.storage.image_cache import ImageCache
from poolfeed.storage.listing_store import ListingStore

logger = logging.getLogger("poolfeed.cli")

# Stderr console for status messages so stdout stays clean for JSON
_err = Console(stderr=True)


def resolve_marketplace(value: str) -> Marketplace:
    """Map a marketplace id to its enum member.

    Raises ``SystemExit`` on unknown ids.
    """
    try:
        return Marketplace(value.strip().lower())
    except ValueError:
        valid = ", ".join(m.value for m in Marketplace)
        _err.print(f"[red]Unknown marketplace: {value}[/red]")
        _err.print(f"[dim]Available: {valid}[/dim]")
        raise SystemExit(1) from None


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [k.strip() for k in value.split(",") if k.strip()]


def _print_report(report: IngestionReport) -> None:
    """Render a Rich summary table for one run."""
    table = Table(
        title=f"Ingest: {report.query} ({report.marketplace})",
        show_lines=True,
        title_style="bold cyan",
    )
    table.add_column("Fetched", justify="right")
    table.add_column("Created", justify="right", style="green")
    table.add_column("Updated", justify="right", style="green")
    table.add_column("Rejected", justify="right", style="yellow")
    table.add_column("Excluded", justify="right", style="yellow")
    table.add_column("Images", justify="right")
    table.add_column("Errors", justify="right", style="red")
    table.add_row(
        str(report.fetched),
        str(report.created),
        str(report.updated),
        str(report.rejected),
        str(report.excluded),
        str(report.images_cached),
        str(len(report.errors)),
    )
    Console().print(table)


def _emit(report: IngestionReport, output_format: str) -> None:
    for error_msg in report.errors:
        _err.print(f"[red]Error: {error_msg}[/red]")
    if output_format == "table":
        _print_report(report)
    else:
        json.dump(asdict(report), sys.stdout, ensure_ascii=False, indent=2)
        sys.stdout.write("\n")


def build_runner(
    exclude_csv: str | None = None,
    store: ListingStore | None = None,
) -> IngestionRunner:
    """Wire a runner over the configured store and image cache."""
    gate = FetchGate()
    return IngestionRunner(
        store=store or ListingStore(),
        gate=gate,
        image_cache=ImageCache(gate),
        quality_filter=QualityFilter(extra_keywords=_split_csv(exclude_csv)),
    )


async def cli_ingest(
    marketplace: str,
    query: str,
    limit: int = Settings.DEFAULT_INGEST_LIMIT,
    with_details: bool = False,
    prefetch_images: bool = False,
    exclude_csv: str | None = None,
    every: float | None = None,
    output_format: str = "table",
    max_runs: int | None = None,
    runner: IngestionRunner | None = None,
) -> int:
    """Run one ingestion (or repeat it every *every* seconds).

    Returns an exit code: 1 when the last run persisted nothing and
    hit errors, 0 otherwise.
    """
    market = resolve_marketplace(marketplace)
    runner = runner or build_runner(exclude_csv)

    _err.print(
        f"[bold]Ingesting:[/bold] {query}  "
        f"[dim]marketplace={market.value} limit={limit}[/dim]"
    )
    exclusions = _split_csv(exclude_csv)
    if exclusions:
        _err.print(f"[dim]Excluding: {', '.join(exclusions)}[/dim]")

    async def run_once() -> IngestionReport:
        result = await runner.run(
            market,
            query,
            limit,
            with_details=with_details,
            prefetch_images=prefetch_images,
        )
        _emit(result, output_format)
        return result

    report = await run_once()
    runs = 1
    while every and (max_runs is None or runs < max_runs):
        _err.print(f"[dim]Next run in {every:.0f}s (Ctrl+C to stop)[/dim]")
        await asyncio.sleep(every)
        report = await run_once()
        runs += 1

    if report.errors and not report.persisted:
        return 1
    _err.print(
        f"[green]✓ {report.persisted} listings stored"
        f" of {report.fetched} fetched[/green]"
    )
    return 0


def run_serve(host: str = "127.0.0.1", port: int = 8000) -> int:
    """Serve the HTTP endpoints with uvicorn."""
    import uvicorn

    from poolfeed.api.app import create_app

    _err.print(f"[bold]Serving on http://{host}:{port}[/bold]")
    uvicorn.run(create_app(), host=host, port=port, log_config=None)
    return 0


def run_mark_bad(refs: list[str], image_cache: ImageCache | None = None) -> int:
    """Add image content keys (or URLs) to the known-bad set."""
    cache = image_cache or ImageCache(FetchGate())
    for ref in refs:
        key = cache.mark_bad(ref)
        _err.print(f"[green]✓ {key}[/green] [dim]{ref}[/dim]")
    return 0


async def run_renormalize(runner: IngestionRunner | None = None) -> int:
    """Re-derive stored listings from their preserved raw records."""
    runner = runner or build_runner()
    _err.print("[bold]Re-normalizing stored listings...[/bold]")
    report = await runner.renormalize_all()
    _err.print(
        f"[green]✓ {report.updated} of {report.fetched} listings"
        " re-normalized[/green]"
    )
    if report.rejected:
        _err.print(f"[yellow]{report.rejected} could not be rebuilt[/yellow]")
    return 0
