"""Command-line interface with Rich formatting."""

import asyncio
import json
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

import click
import pytz
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
import structlog

from .config import load_settings, create_example_config
from .database import DatabaseManager
from .errors import EventSyncError
from .models import TriggerReason
from .services import ProviderError
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=getattr(logging, level, logging.INFO))
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def async_command(f):
    """Decorator to wrap async click commands."""
    @click.pass_context
    def wrapper(ctx, *args, **kwargs):
        return asyncio.run(f(ctx, *args, **kwargs))
    wrapper.__name__ = f.__name__
    wrapper.__doc__ = f.__doc__
    return wrapper


def _fail(message: str, settings=None) -> None:
    console.print(f"[red]{message}[/red]")
    if settings is not None and settings.debug:
        console.print_exception()
    sys.exit(1)


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """eventsync - keep scheduled events reconciled and measured.

    Mirrors a scheduling provider's events into a local store through
    webhooks or polling, and computes timezone-correct booking metrics.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings
        setup_logging(settings.log_level, settings.debug)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='0.0.0.0', help='Bind host for HTTP server')
@click.option('--port', default=8080, type=int, help='Bind port for HTTP server')
def serve(host, port):
    """Run HTTP server with background reconciliation (container friendly)."""
    try:
        import uvicorn
        uvicorn.run("eventsync.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command('init-db')
@click.pass_context
def init_db(ctx):
    """Create database tables."""
    settings = ctx.obj['settings']
    DatabaseManager(settings).init_db()
    console.print(f"[green]✓ Database ready at {settings.database_url}[/green]")


@cli.command()
@click.argument('project_id')
@click.option('--reason', '-r', type=click.Choice([r.value for r in TriggerReason]),
              default=TriggerReason.MANUAL.value, help='Trigger reason recorded for the run')
@click.option('--days-back', type=int, help='Override the lookback window in days')
@click.option('--days-ahead', type=int, help='Override the lookahead window in days')
@click.option('--debug-mode', is_flag=True, help='Wider lookback and per-event logging')
@async_command
async def sync(ctx, project_id, reason, days_back, days_ahead, debug_mode):
    """Reconcile one project's events with the provider."""
    settings = ctx.obj['settings']
    now = datetime.now(pytz.UTC)
    window_start = now - timedelta(days=days_back) if days_back is not None else None
    window_end = now + timedelta(days=days_ahead) if days_ahead is not None else None

    try:
        async with SyncEngine(settings) as engine:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task(f"Reconciling {project_id}...", total=None)
                report = await engine.sync_project(
                    project_id,
                    TriggerReason(reason),
                    window_start=window_start,
                    window_end=window_end,
                    debug_mode=debug_mode,
                )
    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except (EventSyncError, ProviderError) as e:
        _fail(f"Sync failed: {e}", settings)

    logger.debug("sync_finished", project_id=project_id, run_id=str(report.run_id), phase=report.phase.value)
    _display_sync_report(report)


@cli.command()
@click.argument('project_id')
@click.option('--from', 'start', type=click.DateTime(formats=['%Y-%m-%d']), required=True,
              help='First day of the range (inclusive)')
@click.option('--to', 'end', type=click.DateTime(formats=['%Y-%m-%d']), required=True,
              help='Last day of the range (inclusive)')
@click.option('--timezone', '-t', help='IANA timezone for day boundaries')
@click.option('--json', 'as_json', is_flag=True, help='Print raw JSON')
@click.pass_context
def metrics(ctx, project_id, start, end, timezone, as_json):
    """Show booking metrics compared with the previous period."""
    settings = ctx.obj['settings']
    engine = SyncEngine(settings)
    engine.db_manager.init_db()
    try:
        report = engine.compute_metrics(project_id, start.date(), end.date(), timezone)
    except EventSyncError as e:
        _fail(f"Metrics failed: {e}", settings)

    if as_json:
        click.echo(json.dumps(report.as_dict(), indent=2))
        return
    _display_metrics(report)


@cli.command()
@click.argument('project_id')
@click.pass_context
def connect(ctx, project_id):
    """Begin OAuth authorization and print the authorization URL."""
    settings = ctx.obj['settings']
    missing_fields = settings.validate_required_settings()
    if missing_fields:
        console.print(Panel(
            "[red]Missing required configuration fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Error"
        ))
        sys.exit(1)

    engine = SyncEngine(settings)
    engine.db_manager.init_db()
    try:
        url = engine.channel.begin_authorization(project_id)
    except EventSyncError as e:
        _fail(f"Cannot start authorization: {e}", settings)
    console.print(Panel(url, title=f"Authorize {project_id}"))
    console.print(f"Then run [bold]eventsync authorize {project_id} <code>[/bold]")


@cli.command()
@click.argument('project_id')
@click.argument('code')
@async_command
async def authorize(ctx, project_id, code):
    """Complete OAuth with the code from the redirect."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine(settings) as engine:
            connection = await engine.channel.complete_authorization(project_id, code)
    except (EventSyncError, ProviderError) as e:
        _fail(f"Authorization failed: {e}", settings)

    color = "green" if connection.channel_mode.value == "webhook" else "yellow"
    console.print(f"[{color}]✓ {project_id} connected ({connection.channel_mode.value})[/{color}]")
    if connection.status_reason:
        console.print(f"[dim]{connection.status_reason}[/dim]")


@cli.command()
@click.argument('project_id')
@click.confirmation_option(prompt='Disconnect and delete this project\'s mappings?')
@async_command
async def disconnect(ctx, project_id):
    """Disconnect a project: remove webhook, tokens and mappings."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine(settings) as engine:
            await engine.channel.disconnect(project_id)
    except EventSyncError as e:
        _fail(f"Disconnect failed: {e}", settings)
    console.print(f"[green]✓ {project_id} disconnected[/green]")


@cli.command()
@click.argument('project_id')
@async_command
async def health(ctx, project_id):
    """Check a project's channel and re-register a vanished webhook."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine(settings) as engine:
            connection = await engine.channel.check_health(project_id)
    except (EventSyncError, ProviderError) as e:
        _fail(f"Health check failed: {e}", settings)
    _display_connection(connection)


@cli.command()
@async_command
async def status(ctx):
    """Show store statistics and per-project connection tests."""
    settings = ctx.obj['settings']
    async with SyncEngine(settings) as engine:
        stats = engine.get_status()
        results = await engine.test_connections()

    console.print("\n[bold]Store[/bold]")
    for key, value in stats.items():
        console.print(f"{key.replace('_', ' ').title()}: {value}")

    if results:
        table = Table(show_header=True, header_style="bold magenta", title="Connections")
        table.add_column("Project", style="cyan")
        table.add_column("Status")
        table.add_column("Event Types", justify="center")
        for project_id, result in results.items():
            if result['success']:
                table.add_row(project_id, "[green]✓ Connected[/green]", str(result.get('event_type_count', 0)))
            else:
                table.add_row(project_id, f"[red]✗ {result.get('error_type', 'Error')}[/red]", "N/A")
        console.print(table)


@cli.command('event-types')
@click.argument('project_id')
@async_command
async def event_types(ctx, project_id):
    """List the provider's event types and who tracks them."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine(settings) as engine:
            types = await engine.provider.list_event_types(project_id)
            owners = {t.id: engine.registry.owner_of(t.id) for t in types}
    except (EventSyncError, ProviderError) as e:
        _fail(f"Failed to list event types: {e}", settings)

    table = Table(show_header=True, header_style="bold magenta", title="Event Types")
    table.add_column("Name", style="cyan")
    table.add_column("URI", style="dim")
    table.add_column("Tracked By")
    for event_type in types:
        owner = owners.get(event_type.id)
        table.add_row(event_type.name, event_type.id, owner.project_id if owner else "-")
    console.print(table)


@cli.group()
def mappings():
    """Event-type mapping commands."""
    pass


@mappings.command('list')
@click.argument('project_id')
@click.option('--all', 'show_all', is_flag=True, help='Include inactive mappings')
@click.pass_context
def list_mappings(ctx, project_id, show_all):
    """List a project's event-type mappings."""
    engine = SyncEngine(ctx.obj['settings'])
    engine.db_manager.init_db()
    rows = engine.registry.list_all(project_id) if show_all else engine.registry.list_active(project_id)

    if not rows:
        console.print("[yellow]No mappings found[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title=f"Mappings for {project_id}")
    table.add_column("Event Type", style="cyan")
    table.add_column("Name")
    table.add_column("Active", justify="center")
    table.add_column("Created", style="dim")
    for mapping in rows:
        table.add_row(
            mapping.remote_event_type_id,
            mapping.display_name,
            "✓" if mapping.is_active else "✗",
            mapping.created_at.strftime('%Y-%m-%d %H:%M') if mapping.created_at else "",
        )
    console.print(table)


@mappings.command('activate')
@click.argument('project_id')
@click.argument('event_type_id')
@click.option('--name', '-n', default='', help='Display name for the event type')
@click.option('--transfer', is_flag=True, help='Take ownership from another project')
@async_command
async def activate_mapping(ctx, project_id, event_type_id, name, transfer):
    """Start tracking an event type for a project."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine(settings) as engine:
            mapping = engine.registry.activate(project_id, event_type_id, name, transfer_ownership=transfer)
            console.print(f"[green]✓ {mapping.remote_event_type_id} tracked by {project_id}[/green]")
    except EventSyncError as e:
        _fail(f"Activation failed: {e}", settings)


@mappings.command('deactivate')
@click.argument('project_id')
@click.argument('event_type_id')
@click.pass_context
def deactivate_mapping(ctx, project_id, event_type_id):
    """Stop tracking an event type for a project."""
    engine = SyncEngine(ctx.obj['settings'])
    engine.db_manager.init_db()
    if engine.registry.deactivate(project_id, event_type_id):
        console.print(f"[green]✓ {event_type_id} deactivated[/green]")
    else:
        console.print("[yellow]Mapping was not active[/yellow]")


@cli.group()
def webhooks():
    """Webhook subscription commands."""
    pass


@webhooks.command('cleanup')
@click.argument('project_id')
@async_command
async def cleanup_webhooks(ctx, project_id):
    """Delete duplicate webhook registrations, keeping the newest."""
    settings = ctx.obj['settings']
    try:
        async with SyncEngine(settings) as engine:
            report = await engine.channel.cleanup_duplicates(project_id)
    except (EventSyncError, ProviderError) as e:
        _fail(f"Cleanup failed: {e}", settings)

    console.print(f"Kept: {report.kept_webhook_id or '-'}  State: {report.state.value}")
    console.print(f"Deleted: {len(report.deleted)}")
    if report.delete_failures:
        console.print(f"[yellow]Could not delete: {', '.join(report.delete_failures)}[/yellow]")


@cli.group()
def config():
    """Configuration management commands."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env',
              help='Path to create config file')
@click.option('--force', '-f', is_flag=True,
              help='Overwrite existing file')
def create_config(path, force):
    """Create an example configuration file."""
    config_path = Path(path)

    if config_path.exists() and not force:
        if not Confirm.ask(f"File {path} already exists. Overwrite?"):
            console.print("[yellow]Configuration creation cancelled[/yellow]")
            return

    create_example_config(config_path)
    console.print(f"[green]Configuration file created at {path}[/green]")
    console.print("Please edit the file with your actual credentials.")


def _display_sync_report(report):
    """Display a reconciliation report."""
    if report.skipped:
        console.print(f"[yellow]Skipped: {report.skip_reason}[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Reconciliation")
    table.add_column("Fetched", justify="center")
    table.add_column("Gaps", justify="center")
    table.add_column("Written", justify="center")
    table.add_column("Stale", justify="center", style="dim")
    table.add_column("Refreshed", justify="center")
    table.add_column("Failures", justify="center")
    table.add_row(
        str(report.events_fetched),
        str(report.gaps_found),
        str(report.events_upserted),
        str(report.stale_skipped),
        str(report.statuses_refreshed),
        str(len(report.failures)),
    )
    console.print(table)

    if report.partial:
        console.print("[yellow]⚠️  Provider listing was cut off; results are partial[/yellow]")
    if report.failures:
        console.print(Panel(
            "\n".join(f"• {f.remote_event_id}: {f.error}" for f in report.failures),
            title="[red]Failures[/red]",
            border_style="red"
        ))


def _display_metrics(report):
    """Display metrics with period comparison."""
    table = Table(
        show_header=True,
        header_style="bold magenta",
        title=f"{report.current.start} → {report.current.end} ({report.timezone})"
    )
    table.add_column("Metric", style="cyan")
    table.add_column("Current", justify="right")
    table.add_column("Previous", justify="right", style="dim")
    table.add_column("Growth", justify="right")
    for name, comparison in report.comparisons.items():
        color = "green" if comparison.growth > 0 else "red" if comparison.growth < 0 else "white"
        table.add_row(
            name.replace('_', ' ').title(),
            f"{comparison.current:g}",
            f"{comparison.previous:g}",
            f"[{color}]{comparison.growth:+.1f}%[/{color}]",
        )
    console.print(table)


def _display_connection(connection):
    """Display a connection record."""
    console.print(Panel(
        f"State: {connection.state.value}\n"
        f"Mode: {connection.channel_mode.value}\n"
        f"Webhook: {connection.webhook_id or '-'}\n"
        f"Last sync: {connection.last_sync_at or '-'}\n"
        f"Last health check: {connection.last_health_check or '-'}"
        + (f"\nReason: {connection.status_reason}" if connection.status_reason else ""),
        title=connection.project_id
    ))


def main():
    """Main entry point."""
    cli()


if __name__ == '__main__':
    main()
