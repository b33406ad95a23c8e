#!/usr/bin/env python3
"""
vset-detect CLI

Command-line interface for detecting validator set replication problems
between a provider chain and its consumer chains.

Typical run:
    vset-detect index provider
    vset-detect index consumer neutron
    vset-detect check neutron
"""

import logging
from dataclasses import replace
from typing import List, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import BarColumn, Progress, SpinnerColumn, TextColumn
from rich.table import Table

from .api import ChainRPCError
from .changelog import ChangelogError, ValidatorSetChangeEvent
from .config import PROVIDER_CHAIN, ConfigError, Settings
from .consistency import ConsistencyError, ConsistencyReport
from .service import DetectService
from .store import CacheError, KeyNotFoundError

# Configure rich console
console = Console()
logger = logging.getLogger(__name__)

PIPELINE_ERRORS = (ConfigError, ChainRPCError, CacheError, ChangelogError, ConsistencyError)


def setup_logging(verbose: bool = False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


def _service(ctx) -> DetectService:
    if "service" not in ctx.obj:
        settings = ctx.obj["settings"]
        ctx.obj["service"] = DetectService(settings)
        ctx.call_on_close(ctx.obj["service"].close)
    return ctx.obj["service"]


def print_events(events: List[ValidatorSetChangeEvent], title: str):
    table = Table(title=title)
    table.add_column("Height", style="cyan", justify="right")
    table.add_column("Timestamp")
    table.add_column("Validators Hash", style="green")
    table.add_column("Content Hash", style="yellow")
    table.add_column("Previous Content Hash")

    for event in events:
        table.add_row(
            str(event.height),
            event.timestamp.isoformat(),
            event.validators_hash,
            event.content_hash,
            event.old_content_hash or "-",
        )

    console.print(table)


def print_report(report: ConsistencyReport, consumer: str, details: bool = False):
    table = Table(title=f"Consistency of {consumer} against provider")
    table.add_column("Classification", style="cyan")
    table.add_column("Count", justify="right")

    table.add_row("Checked", str(report.checked_count))
    table.add_row("Consistent", f"[green]{len(report.consistent)}[/green]")
    table.add_row("Missing", f"[red]{report.missing_count}[/red]")
    table.add_row("Not yet existed", f"[red]{report.not_yet_existed_count}[/red]")
    table.add_row("Out of order", f"[red]{report.out_of_order_count}[/red]")
    table.add_row("Excluded (before provider epoch)", str(len(report.excluded)))

    console.print(table)
    console.print(f"Provider epoch: {report.provider_epoch.isoformat()}")

    if details:
        for label, events in (
            ("Missing", report.missing),
            ("Not yet existed", report.not_yet_existed),
            ("Out of order", report.out_of_order),
        ):
            if events:
                print_events(events, label)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option("--db-file", envvar="DB_FILE", help="Path to the block cache database")
@click.option("--output-dir", envvar="VSET_OUTPUT_DIR", help="Directory for changelog CSV files")
@click.pass_context
def cli(ctx, verbose: bool, db_file: Optional[str], output_dir: Optional[str]):
    """
    vset-detect - Detect validator set changes across provider and consumer chains.

    Blocks are ingested into a local cache, turned into a changelog of
    validator set changes per chain, and the consumer changelog is checked
    against the provider's.
    """
    setup_logging(verbose)
    ctx.ensure_object(dict)
    ctx.obj["verbose"] = verbose

    try:
        settings = Settings.from_env()
    except ConfigError as e:
        raise click.ClickException(str(e))

    overrides = {}
    if db_file:
        overrides["db_file"] = db_file
    if output_dir:
        overrides["output_dir"] = output_dir
    ctx.obj["settings"] = replace(settings, **overrides)


@cli.group()
def index():
    """Indexes blocks from the chain."""


def _run_ingest(ctx, chain: str, force: bool, to_height: Optional[int], concurrency: Optional[int]):
    if concurrency:
        ctx.obj["settings"] = replace(ctx.obj["settings"], concurrency=concurrency)

    try:
        service = _service(ctx)
        start, end = service.ingest_bounds(chain, to_height)

        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("{task.completed}/{task.total}"),
            console=console,
        ) as progress:
            task = progress.add_task(f"Indexing {chain} {start}..{end}", total=end - start + 1)
            result = service.ingest(chain, force=force, to_height=end,
                                    progress=lambda _height: progress.advance(task))
    except PIPELINE_ERRORS as e:
        logger.error(f"Error indexing {chain}: {e}")
        raise click.ClickException(str(e))

    console.print(
        f"[green]Indexed {len(result.indexed)}[/green], skipped {len(result.skipped)}, "
        f"[red]failed {len(result.failed)}[/red] of {result.total} blocks on {chain}"
    )
    if result.failed:
        console.print("[yellow]Run the command again to retry the failed heights.[/yellow]")
    console.print("Done !!!")


@index.command()
@click.option("--force", is_flag=True, help="Refetch blocks that are already cached")
@click.option("--to-height", type=int, help="Last height to index (defaults to latest)")
@click.option("--concurrency", type=int, help="Number of concurrent block fetches")
@click.pass_context
def provider(ctx, force: bool, to_height: Optional[int], concurrency: Optional[int]):
    """Indexes blocks from the provider."""
    _run_ingest(ctx, PROVIDER_CHAIN, force, to_height, concurrency)


@index.command()
@click.argument("name")
@click.option("--force", is_flag=True, help="Refetch blocks that are already cached")
@click.option("--to-height", type=int, help="Last height to index (defaults to latest)")
@click.option("--concurrency", type=int, help="Number of concurrent block fetches")
@click.pass_context
def consumer(ctx, name: str, force: bool, to_height: Optional[int], concurrency: Optional[int]):
    """
    Indexes blocks from the consumer.

    NAME: Consumer chain name; NAME_ADDR and NAME_MIN_HEIGHT must be set
    """
    _run_ingest(ctx, name, force, to_height, concurrency)


@cli.command()
@click.argument("chain")
@click.option("--to-height", type=int, help="Last height to scan (defaults to latest)")
@click.option("--quiet", "-q", is_flag=True, help="Only print the number of changes")
@click.pass_context
def changelog(ctx, chain: str, to_height: Optional[int], quiet: bool):
    """
    Build the validator set changelog of a chain from cached blocks.

    CHAIN: "provider" or a consumer chain name
    """
    try:
        events = _service(ctx).changelog(chain, to_height)
    except PIPELINE_ERRORS as e:
        logger.error(f"Error building changelog for {chain}: {e}")
        raise click.ClickException(str(e))

    if not quiet:
        print_events(events, f"Validator set changes on {chain}")
    console.print(f"Found {len(events)} validator set changes on {chain}")


@cli.command()
@click.argument("consumer_name")
@click.option("--to-height", type=int, help="Last height to scan on both chains (defaults to latest)")
@click.option("--strict-order", is_flag=True,
              help="Count sets not found on the provider as out of order")
@click.option("--from-artifacts", is_flag=True,
              help="Compare existing changelog CSV files instead of rebuilding them")
@click.option("--details", is_flag=True, help="List every flagged event")
@click.pass_context
def check(ctx, consumer_name: str, to_height: Optional[int], strict_order: bool,
          from_artifacts: bool, details: bool):
    """
    Check a consumer's validator set changes against the provider.

    CONSUMER_NAME: Consumer chain name
    """
    try:
        report = _service(ctx).check(
            consumer_name, to_height=to_height, strict=strict_order, from_artifacts=from_artifacts
        )
    except PIPELINE_ERRORS as e:
        logger.error(f"Error checking {consumer_name}: {e}")
        raise click.ClickException(str(e))

    print_report(report, consumer_name, details=details)


cli.add_command(check, name="view-missing-validator")


@cli.command("get-block")
@click.argument("chain")
@click.argument("height", type=int)
@click.pass_context
def get_block(ctx, chain: str, height: int):
    """Print a cached block and its evidence."""
    try:
        block, evidence = _service(ctx).get_block(chain, height)
    except KeyNotFoundError:
        raise click.ClickException(f"block {height} of {chain} is not cached")
    except (CacheError, ChangelogError) as e:
        raise click.ClickException(str(e))

    console.print_json(block.model_dump_json())
    if evidence is not None:
        console.print(Panel(evidence, title="Evidence", border_style="red"))


@cli.command()
@click.argument("chain")
@click.pass_context
def evidence(ctx, chain: str):
    """List cached evidence of a chain by height."""
    try:
        entries = _service(ctx).list_evidence(chain)
    except CacheError as e:
        raise click.ClickException(str(e))

    if not entries:
        console.print(f"[yellow]No evidence cached for {chain}[/yellow]")
        return

    for height, data in entries:
        console.print(f"[cyan]{height}[/cyan]")
        console.print(data)


@cli.command("validator-set")
@click.argument("chain")
@click.argument("height", type=int)
@click.pass_context
def validator_set(ctx, chain: str, height: int):
    """Get validator set at specific block height from its last commit."""
    try:
        validators_hash, signers = _service(ctx).commit_signers(chain, height)
    except KeyNotFoundError:
        raise click.ClickException(f"block {height} of {chain} is not cached")
    except (CacheError, ChangelogError) as e:
        raise click.ClickException(str(e))

    logger.info(f"Validators hash: {validators_hash}")

    table = Table(title=f"Last commit signers of {chain} block {height}")
    table.add_column("#", style="cyan", justify="right")
    table.add_column("Address", style="green")
    for i, address in enumerate(signers):
        table.add_row(str(i), address)

    console.print(f"Validators hash: {validators_hash}")
    console.print(table)


if __name__ == "__main__":
    cli()
