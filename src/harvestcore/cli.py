"""Command-line interface for harvestcore."""

from __future__ import annotations

import asyncio
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from harvestcore import __version__
from harvestcore.config import Config, load_config
from harvestcore.errors import JobValidationError
from harvestcore.observability import configure_logging, start_metrics_server
from harvestcore.service import DiscoveryOptions, HarvestService, ScrapeOptions
from harvestcore.shutdown import ShutdownCoordinator

console = Console(stderr=True)
logger = structlog.get_logger(__name__)

EXIT_VALIDATION_ERROR = 2

T = TypeVar("T")


def _load(ctx: click.Context) -> Config:
    try:
        config = load_config(ctx.obj.get("config_path"))
    except (ValidationError, FileNotFoundError) as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(EXIT_VALIDATION_ERROR)
    if ctx.obj.get("log_level"):
        config.monitoring.log_level = ctx.obj["log_level"]
    if ctx.obj.get("output_dir"):
        config.crawler.output_base_path = Path(ctx.obj["output_dir"])
    return config


def _run_job(config: Config, job: Callable[[HarvestService], Awaitable[T]]) -> T:
    """Run one job on a fresh event loop with SIGINT/SIGTERM wired to the shutdown coordinator."""
    configure_logging(config.monitoring)
    start_metrics_server(config.monitoring)

    async def runner() -> T:
        coordinator = ShutdownCoordinator()
        coordinator.install_signal_handlers()
        try:
            service = HarvestService(config, coordinator=coordinator)
            return await job(service)
        finally:
            coordinator.remove_signal_handlers()

    try:
        return asyncio.run(runner())
    except JobValidationError as e:
        logger.error("Job rejected", error=str(e))
        console.print(f"[red]Invalid job: {e}[/red]")
        sys.exit(EXIT_VALIDATION_ERROR)


def _summary_table(title: str, rows: Dict[str, Any]) -> Table:
    table = Table(title=title)
    table.add_column("Metric", style="cyan")
    table.add_column("Value", style="magenta")
    for key, value in rows.items():
        table.add_row(key, str(value))
    return table


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", type=click.Path(exists=True, dir_okay=False), help="Configuration file path")
@click.option(
    "--log-level",
    default=None,
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    help="Logging level (overrides configuration)",
)
@click.option("--output-dir", type=click.Path(file_okay=False), help="Output base directory (overrides configuration)")
@click.pass_context
def cli(ctx: click.Context, config: Optional[str], log_level: Optional[str], output_dir: Optional[str]) -> None:
    """harvestcore - polite, resumable web crawling and content harvesting."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config) if config else None
    ctx.obj["log_level"] = log_level
    ctx.obj["output_dir"] = output_dir


@cli.command()
@click.argument("seed_url")
@click.option("--max-depth", default=10, show_default=True, type=click.IntRange(1, 100))
@click.option(
    "--max-concurrent",
    default=None,
    type=click.IntRange(1, 10),
    help="Pages processed concurrently (defaults to crawler.max_concurrent_pages)",
)
@click.option("--keyword", "keywords", multiple=True, help="Only follow URLs containing this keyword (repeatable)")
@click.option("--exclude", "exclude_patterns", multiple=True, help="Regex of URLs to skip (repeatable)")
@click.pass_context
def discover(
    ctx: click.Context,
    seed_url: str,
    max_depth: int,
    max_concurrent: Optional[int],
    keywords: tuple[str, ...],
    exclude_patterns: tuple[str, ...],
) -> None:
    """Discover URLs reachable from SEED_URL."""
    config = _load(ctx)
    options = DiscoveryOptions(
        max_depth=max_depth,
        max_concurrent=max_concurrent,
        keywords=list(keywords),
        exclude_patterns=list(exclude_patterns),
    )

    concurrency = max_concurrent or config.crawler.max_concurrent_pages
    console.print(
        Panel.fit(
            f"[bold blue]URL discovery[/bold blue]\nSeed: {seed_url}\nMax depth: {max_depth}\nConcurrency: {concurrency}",
            title="Starting",
        )
    )
    result = _run_job(config, lambda service: service.discover(seed_url, options))

    console.print(
        _summary_table(
            "Discovery Results",
            {
                "Status": result.status,
                "Discovered": result.total_urls_discovered,
                "Visited": result.urls_successfully_visited,
                "Failed": result.failed_urls,
                "Duration (s)": result.processing_time,
                "URL list": result.url_list_file or "-",
                "Resumed": result.resumed,
            },
        )
    )


@cli.command()
@click.argument("urls", nargs=-1)
@click.option("--url-file", type=click.Path(exists=True, dir_okay=False), help="File with one URL per line")
@click.option(
    "--max-concurrent",
    default=None,
    type=click.IntRange(1, 10),
    help="Pages processed concurrently (defaults to crawler.max_concurrent_pages)",
)
@click.option("--wait-min", "wait_time_min_ms", default=1000, show_default=True, type=click.IntRange(min=0))
@click.option("--wait-max", "wait_time_max_ms", default=3000, show_default=True, type=click.IntRange(min=0))
@click.option("--selector", "content_selectors", multiple=True, help="CSS selector for main content (repeatable)")
@click.option("--save-text", type=click.Path(file_okay=False), help="Directory to write extracted page text")
@click.pass_context
def scrape(
    ctx: click.Context,
    urls: tuple[str, ...],
    url_file: Optional[str],
    max_concurrent: Optional[int],
    wait_time_min_ms: int,
    wait_time_max_ms: int,
    content_selectors: tuple[str, ...],
    save_text: Optional[str],
) -> None:
    """Scrape URLS and/or the URLs listed in --url-file."""
    config = _load(ctx)
    try:
        options = ScrapeOptions(
            urls=list(urls) or None,
            url_file=Path(url_file) if url_file else None,
            max_concurrent=max_concurrent,
            wait_time_min_ms=wait_time_min_ms,
            wait_time_max_ms=wait_time_max_ms,
            content_selectors=list(content_selectors),
            output_dir=Path(save_text) if save_text else None,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid options: {e}[/red]")
        sys.exit(EXIT_VALIDATION_ERROR)

    result = _run_job(config, lambda service: service.scrape(options=options))

    console.print(
        _summary_table(
            "Scraping Results",
            {
                "Status": result.status,
                "Total URLs": result.total_urls,
                "Succeeded": result.successful_urls,
                "Failed": result.failed_urls,
                "Processed this run": result.processed_this_session,
                "Average content length": result.summary.average_content_length,
                "Duration (s)": result.processing_time,
                "Resumed": result.resumed,
            },
        )
    )
    for failure in result.recent_failures:
        console.print(f"[yellow]failed[/yellow] {failure['url']}: {failure['error']}")


@cli.command("config")
@click.option("--validate", "validate_only", is_flag=True, help="Only validate; print nothing on success")
@click.pass_context
def show_config(ctx: click.Context, validate_only: bool) -> None:
    """Print the effective configuration."""
    config = _load(ctx)
    if validate_only:
        console.print("[green]Configuration is valid[/green]")
        return
    click.echo(json.dumps(config.model_dump(mode="json"), indent=2))


def main() -> None:
    """Main entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
