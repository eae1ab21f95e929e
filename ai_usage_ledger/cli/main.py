"""
CLI interface for AI Usage Ledger.

Provides command-line access to syncing and usage statistics.
"""

import logging
import sys
from typing import Optional

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.progress import Progress
from rich.table import Table

from ai_usage_ledger.config.loader import Settings, load_settings, resolve_config_path
from ai_usage_ledger.core.errors import UsageLedgerError
from ai_usage_ledger.core.pipeline import SyncProgress, SyncSummary
from ai_usage_ledger.core.statistics import SortOrder, TimeRange, UsageStatistics
from ai_usage_ledger.core.sync import SyncService
from ai_usage_ledger.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

MAX_DAILY_ROWS = 14

CONFIG_OPTION = typer.Option(
    None, "--config", "-c",
    help="Path to YAML config file (defaults to $AI_USAGE_LEDGER_CONFIG)"
)
VERBOSE_OPTION = typer.Option(False, "--verbose", "-v", help="Enable debug logging")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=verbose)],
        force=True,
    )


def _load_settings(config: Optional[str], verbose: bool) -> Settings:
    _configure_logging(verbose)
    try:
        return load_settings(resolve_config_path(config))
    except (FileNotFoundError, ValueError) as e:
        console.print(f"[red]Error loading config:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


def build_service(settings: Settings) -> SyncService:
    """Create the sync service described by the settings."""
    return SyncService(
        db_path=settings.storage.db_path,
        root=settings.source.root,
        pricing_table=settings.pricing,
        anchor=settings.source.anchor,
        batch_size=settings.ingestion.batch_size,
    )


def _parse_choice(enum_type, value: str, option: str):
    try:
        return enum_type(value)
    except ValueError:
        choices = ", ".join(member.value for member in enum_type)
        console.print(f"[red]Invalid {option}:[/] {value} (choose from {choices})")
        sys.exit(EXIT_CODE_FAIL)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    if 0 < abs(amount) < 0.01:
        return f"${abs(amount):,.4f}"
    return f"${abs(amount):,.2f}"


def _format_tokens(count: int) -> str:
    return f"{count:,}"


@app.callback(invoke_without_command=True)
def main(ctx: typer.Context):
    """AI Usage Ledger CLI."""
    if ctx.invoked_subcommand is None:
        console.print("AI Usage Ledger - Use --help to see available commands")


@app.command()
def init(config: Optional[str] = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION):
    """Initialize the usage database."""
    settings = _load_settings(config, verbose)
    try:
        initialize_schema(settings.storage.db_path)
        console.print(f"[green]✓[/] Database initialized at {settings.storage.db_path}")
        sys.exit(EXIT_CODE_PASS)
    except UsageLedgerError as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def sync(
    full: bool = typer.Option(
        False,
        "--full",
        "-f",
        help="Reprocess every file instead of only new and changed ones"
    ),
    config: Optional[str] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION
):
    """
    Ingest session logs into the usage database.

    The sync runs on a background worker; Ctrl+C stops it after the file
    currently being processed.
    """
    settings = _load_settings(config, verbose)
    service = build_service(settings)
    try:
        with Progress(console=console, transient=True) as progress:
            task = progress.add_task("Syncing", total=None)

            def report(update: SyncProgress):
                progress.update(task, total=update.files_total, completed=update.files_done)

            future = service.submit_sync(incremental=not full, progress=report)
            try:
                summary = future.result()
            except KeyboardInterrupt:
                console.print("[yellow]Cancelling after the current file...[/]")
                service.cancel_sync()
                summary = future.result()
    except UsageLedgerError as e:
        console.print(f"[red]Sync failed:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    finally:
        service.shutdown()

    _display_sync_summary(summary)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def stats(
    time_range: str = typer.Option(
        TimeRange.ALL.value,
        "--range",
        "-r",
        help="Time range: all, last-7-days or last-30-days"
    ),
    project: Optional[str] = typer.Option(
        None,
        "--project",
        "-p",
        help="Only include projects whose path contains this text"
    ),
    config: Optional[str] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION
):
    """Show cost and token usage by model, day and project."""
    selected_range = _parse_choice(TimeRange, time_range, "range")
    settings = _load_settings(config, verbose)
    service = build_service(settings)
    try:
        result = service.get_statistics(selected_range, project)
    except UsageLedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if result.total_requests == 0:
        console.print("\n[bold yellow]No usage data found[/]")
        console.print(f"\nSession logs are read from {settings.source.root}")
        console.print("Run `ai-usage-ledger sync` after using the CLI tool.\n")
        sys.exit(EXIT_CODE_PASS)

    _display_statistics(result, service, selected_range)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def projects(
    sort: str = typer.Option(
        SortOrder.COST_DESC.value,
        "--sort",
        "-s",
        help="Sort order: cost-desc, cost-asc, date-desc, date-asc, name-asc, name-desc"
    ),
    time_range: str = typer.Option(TimeRange.ALL.value, "--range", "-r", help="Time range"),
    config: Optional[str] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION
):
    """List per-project session statistics."""
    sort_order = _parse_choice(SortOrder, sort, "sort order")
    selected_range = _parse_choice(TimeRange, time_range, "range")
    settings = _load_settings(config, verbose)
    service = build_service(settings)
    try:
        rows = service.get_project_usage(selected_range, sort_order)
    except UsageLedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not rows:
        console.print("\n[dim]No projects found.[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Projects ({selected_range.value})")
    table.add_column("Project")
    table.add_column("Cost", justify="right")
    table.add_column("Tokens", justify="right")
    table.add_column("Sessions", justify="right")
    table.add_column("Requests", justify="right")
    table.add_column("Last used")
    for row in rows:
        table.add_row(
            row.project_name,
            _format_currency(row.total_cost),
            _format_tokens(row.total_tokens),
            str(row.session_count),
            str(row.request_count),
            (row.last_used or "")[:19],
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def status(config: Optional[str] = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION):
    """Show where statistics would be read from and what the store holds."""
    settings = _load_settings(config, verbose)
    service = build_service(settings)
    source = service.data_source_status()

    console.print(f"Source root: {settings.source.root}")
    console.print(f"Database:    {settings.storage.db_path}")
    console.print(f"Pricing:     {settings.pricing.version}")
    if source.error:
        console.print(f"[yellow]Store unavailable:[/] {source.error}")
    console.print(f"Data source: [bold]{source.route.value}[/] ({source.state.value})")
    if source.request_count == 0:
        sys.exit(EXIT_CODE_PASS)

    try:
        db_stats = service.get_database_stats()
    except UsageLedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"Entries:     {db_stats['total_entries']:,}")
    console.print(f"Sessions:    {db_stats['total_sessions']:,}")
    by_status = ", ".join(f"{k}={v}" for k, v in sorted(db_stats['files_by_status'].items()))
    console.print(f"Files:       {db_stats['total_files']} ({by_status})")
    console.print(f"Last sync:   {db_stats['last_processed'] or 'never'}")

    try:
        report = service.validate_data_integrity()
    except UsageLedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    if report.is_valid:
        console.print("Integrity:   [green]ok[/]")
    else:
        console.print(f"Integrity:   [yellow]{len(report.issues)} issue(s)[/]")
        for issue in report.issues:
            console.print(f"[yellow]![/] {issue}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def dedupe(config: Optional[str] = CONFIG_OPTION, verbose: bool = VERBOSE_OPTION):
    """Remove stored events that share a message id and request id."""
    settings = _load_settings(config, verbose)
    service = build_service(settings)
    try:
        removed = service.deduplicate()
    except UsageLedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Removed {removed} duplicate entries")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reset(
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    config: Optional[str] = CONFIG_OPTION,
    verbose: bool = VERBOSE_OPTION
):
    """Delete all stored usage data so the next sync rebuilds it."""
    settings = _load_settings(config, verbose)
    if not yes:
        typer.confirm(f"Delete all data in {settings.storage.db_path}?", abort=True)
    service = build_service(settings)
    try:
        removed = service.reset()
    except UsageLedgerError as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    console.print(f"[green]✓[/] Cleared {removed} entries; run `ai-usage-ledger sync` to rebuild")
    sys.exit(EXIT_CODE_PASS)


def _display_sync_summary(summary: SyncSummary):
    """Display a sync summary as a two-column table."""
    kind = "Incremental" if summary.incremental else "Full"
    table = Table(title=f"{kind} sync")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    table.add_row("Files scanned", str(summary.files_scanned))
    table.add_row("Files processed", str(summary.files_processed))
    table.add_row("Files unchanged", str(summary.files_skipped))
    table.add_row("Files failed", str(summary.files_failed))
    table.add_row("Files removed", str(summary.files_removed))
    table.add_row("New entries", str(summary.new_entries))
    table.add_row("Updated entries", str(summary.updated_entries))
    table.add_row("Malformed lines", str(summary.skipped_entries))
    table.add_row("Duplicates", str(summary.duplicate_entries))
    table.add_row("Duration", f"{summary.duration:.2f}s")
    console.print(table)

    if summary.cancelled:
        console.print("[yellow]Sync was cancelled before all files were processed[/]")
    for error in summary.errors:
        console.print(f"[yellow]![/] {error}")
    for model, count in sorted(summary.unpriced_models.items()):
        console.print(f"[yellow]![/] No pricing for model '{model}' ({count} entries priced at $0)")


def _display_statistics(result: UsageStatistics, service: SyncService, time_range: TimeRange):
    """Display usage statistics in a clean, financial format."""
    console.print(f"\n[bold]AI Usage ({time_range.value})[/bold]  [dim]source: {result.source.value}[/]")
    console.print("-" * 40)
    console.print(f"Total cost:     {_format_currency(result.total_cost)}")
    console.print(f"Total tokens:   {_format_tokens(result.total_tokens)}")
    console.print(f"  input:        {_format_tokens(result.total_input_tokens)}")
    console.print(f"  output:       {_format_tokens(result.total_output_tokens)}")
    console.print(f"  cache write:  {_format_tokens(result.total_cache_creation_tokens)}")
    console.print(f"  cache read:   {_format_tokens(result.total_cache_read_tokens)}")
    console.print(f"Sessions:       {result.total_sessions}")
    console.print(f"Requests:       {result.total_requests}")
    console.print(f"Avg/request:    {_format_currency(result.average_cost_per_request)}")

    if result.by_model:
        table = Table(title="By model")
        table.add_column("Model")
        table.add_column("Cost", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Sessions", justify="right")
        table.add_column("Requests", justify="right")
        for row in result.by_model:
            table.add_row(
                service.pricing.display_name(row.model),
                _format_currency(row.total_cost),
                _format_tokens(row.total_tokens),
                str(row.session_count),
                str(row.request_count),
            )
        console.print(table)

    if result.by_date:
        table = Table(title="By day")
        table.add_column("Date")
        table.add_column("Cost", justify="right")
        table.add_column("Tokens", justify="right")
        table.add_column("Models")
        for row in result.by_date[-MAX_DAILY_ROWS:]:
            table.add_row(
                row.date,
                _format_currency(row.total_cost),
                _format_tokens(row.total_tokens),
                ", ".join(row.models_used),
            )
        console.print(table)

    if result.by_project:
        table = Table(title="By project")
        table.add_column("Project")
        table.add_column("Cost", justify="right")
        table.add_column("Sessions", justify="right")
        for row in result.by_project:
            table.add_row(row.project_name, _format_currency(row.total_cost), str(row.session_count))
        console.print(table)


if __name__ == "__main__":
    app()
