"""Command-line interface with Rich formatting."""

import asyncio
import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path
from typing import List, Optional

import click
from dateutil import parser as date_parser
import pytz
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
from rich.table import Table
import structlog

from . import __version__
from .config import Settings, load_settings, create_example_config
from .models import CalendarEvent, EventInput, OutboxJob, RecurrenceScope, SendUpdates, SyncResult
from .services.base import AuthenticationError, NotConfiguredError
from .sync_engine import SyncEngine

console = Console()
logger = structlog.get_logger()

SCOPES = [scope.value for scope in RecurrenceScope]


def setup_logging(level: str, debug: bool = False) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format="%(message)s")
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


def _spinner() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        console=console,
        transient=True
    )


def _fail(settings: Settings, message: str) -> None:
    console.print(f"[red]{message}[/red]")
    if settings.debug:
        console.print_exception()
    sys.exit(1)


def _parse_when(value: str, zone_name: str) -> datetime:
    """Parse a CLI date/time; naive values are in ``zone_name``."""
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError) as e:
        raise click.BadParameter(f"Unrecognized date/time {value!r}: {e}")
    if parsed.tzinfo is None:
        parsed = pytz.timezone(zone_name).localize(parsed)
    return parsed.astimezone(pytz.UTC)


def _format_local(value: datetime, zone_name: str) -> str:
    return value.astimezone(pytz.timezone(zone_name)).strftime('%Y-%m-%d %H:%M')


@click.group()
@click.version_option(version=__version__)
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """shiftcal-sync - two-way sync between a local shift calendar and Google Calendar.

    Local edits are queued in an outbox and pushed on the next sync; remote
    changes are pulled incrementally with Google sync tokens.
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
@async_command
async def connect(ctx):
    """Connect a Google account through the browser."""
    settings = ctx.obj['settings']

    try:
        async with SyncEngine(settings) as sync_engine:
            console.print("Waiting for Google authorization in your browser...")
            status = await sync_engine.auth.connect_interactive()
    except NotConfiguredError as e:
        console.print(Panel(
            f"[red]{e}[/red]\n\nUse [bold]shiftcal-sync config set-client[/bold] or set the environment variables.",
            title="Configuration Error"
        ))
        sys.exit(1)
    except AuthenticationError as e:
        _fail(settings, f"Google connection failed: {e}")
        return

    console.print(f"[green]✓ Connected[/green] {status.account_email or ''}")


@cli.command()
@async_command
async def disconnect(ctx):
    """Revoke and forget the stored Google token."""
    settings = ctx.obj['settings']

    async with SyncEngine(settings) as sync_engine:
        await sync_engine.auth.disconnect()
    console.print("[green]✓ Google account disconnected[/green]")


@cli.command()
@async_command
async def status(ctx):
    """Show connection, calendar and outbox status."""
    settings = ctx.obj['settings']

    async with SyncEngine(settings) as sync_engine:
        connection = sync_engine.auth.status()
        selected = sync_engine.get_selected_calendar()
        with sync_engine.db_manager.get_session() as session:
            sync_token = sync_engine.db_manager.get_sync_token(session)
            window_start, window_end = sync_engine.db_manager.get_sync_window(session)
        outbox_count = sync_engine.outbox.count_active()

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="bold")
    table.add_column("Value")
    table.add_row("OAuth client", "[green]configured[/green]" if connection.configured else "[red]missing[/red]")
    table.add_row("Google account", (
        f"[green]connected[/green] {connection.account_email or ''}"
        if connection.connected else "[yellow]not connected[/yellow]"
    ))
    table.add_row("Calendar", f"{selected.name} ({selected.id})" if selected.id else "[yellow]none selected[/yellow]")
    table.add_row("Next pull", "delta" if sync_token else "full")
    table.add_row("Sync window", f"{window_start:%Y-%m-%d} .. {window_end:%Y-%m-%d}")
    table.add_row("Outbox", f"{outbox_count} active jobs")
    console.print(Panel(table, title="shiftcal-sync status"))


def _display_sync_result(result: SyncResult) -> None:
    color = "yellow" if result.mode.value == "SKIPPED" else "green"
    console.print(
        f"[{color}]{result.mode.value}[/{color}] "
        f"pulled [blue]{result.pulled_events}[/blue], "
        f"pushed [blue]{result.pushed_outbox_jobs}[/blue], "
        f"outbox remaining [blue]{result.outbox_remaining}[/blue]"
    )


@cli.command()
@async_command
async def sync(ctx):
    """Push queued local edits and pull remote changes once."""
    settings = ctx.obj['settings']

    try:
        async with SyncEngine(settings) as sync_engine:
            with _spinner() as progress:
                progress.add_task("Syncing...", total=None)
                result = await sync_engine.run_sync()
    except Exception as e:
        _fail(settings, f"Sync failed: {e}")
        return

    _display_sync_result(result)


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Minutes between passes (defaults to SYNC_CONFIG__SYNC_INTERVAL_MINUTES)')
@click.option('--max-runs', type=int,
              help='Stop after this many passes')
@async_command
async def daemon(ctx, interval, max_runs):
    """Run sync passes continuously."""
    settings = ctx.obj['settings']
    minutes = interval or settings.sync_config.sync_interval_minutes
    console.print(f"[green]Syncing every {minutes} min[/green] (Ctrl+C to stop)")

    completed = 0
    try:
        async with SyncEngine(settings) as sync_engine:
            while not max_runs or completed < max_runs:
                if completed:
                    await asyncio.sleep(minutes * 60)
                started = datetime.now().strftime('%H:%M:%S')
                console.print(f"\n[blue]Pass {completed + 1} started {started}[/blue]")
                try:
                    _display_sync_result(await sync_engine.run_sync_with_retry())
                except Exception as e:
                    logger.error("daemon_pass_failed", error=str(e))
                    console.print(f"[red]Pass failed: {e}[/red]")
                completed += 1
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@cli.command('force-push')
@async_command
async def force_push(ctx):
    """Queue every never-pushed local event for creation and push now."""
    settings = ctx.obj['settings']

    try:
        async with SyncEngine(settings) as sync_engine:
            with _spinner() as progress:
                progress.add_task("Pushing local events...", total=None)
                result = await sync_engine.force_push_all()
    except Exception as e:
        _fail(settings, f"Force push failed: {e}")
        return

    console.print(
        f"Queued [blue]{result.enqueued_jobs}[/blue], pushed [blue]{result.processed_jobs}[/blue], "
        f"skipped [blue]{result.skipped_events}[/blue] already queued"
    )


@cli.group()
def calendars():
    """Calendar selection commands."""
    pass


@calendars.command('list')
@async_command
async def list_calendars(ctx):
    """List writable Google calendars."""
    settings = ctx.obj['settings']

    try:
        async with SyncEngine(settings) as sync_engine:
            with _spinner() as progress:
                progress.add_task("Discovering calendars...", total=None)
                google_calendars = await sync_engine.list_calendars()
            selected = sync_engine.get_selected_calendar()
    except Exception as e:
        _fail(settings, f"Failed to list calendars: {e}")
        return

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Name", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Primary", justify="center")
    table.add_column("Access", justify="center")
    table.add_column("Selected", justify="center")
    for cal in google_calendars:
        table.add_row(
            cal.name,
            cal.id,
            "✓" if cal.is_primary else "",
            cal.access_role,
            "✓" if cal.id == selected.id else "",
        )
    console.print(table)


@calendars.command('select')
@click.argument('calendar_id')
@async_command
async def select_calendar(ctx, calendar_id):
    """Select the Google calendar to sync with.

    Switching to another calendar discards local events and queued edits.
    """
    settings = ctx.obj['settings']

    async with SyncEngine(settings) as sync_engine:
        selected = sync_engine.get_selected_calendar()
        if selected.id and selected.id != calendar_id:
            if not Confirm.ask("Switching calendars discards local events and queued edits. Continue?"):
                console.print("[yellow]Calendar selection cancelled[/yellow]")
                return
        try:
            calendar = await sync_engine.select_calendar(calendar_id)
        except Exception as e:
            _fail(settings, f"Failed to select calendar: {e}")
            return

    console.print(f"[green]✓ Selected {calendar.name}[/green]")


@cli.group()
def events():
    """Local event commands."""
    pass


def _display_events(items: List[CalendarEvent], zone_name: str) -> None:
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Type", style="magenta")
    table.add_column("Summary", style="cyan")
    table.add_column("Repeat", justify="center")
    table.add_column("State")
    table.add_column("Local ID", style="dim")
    for event in items:
        table.add_row(
            _format_local(event.start_at_utc, zone_name),
            _format_local(event.end_at_utc, zone_name),
            event.event_type,
            event.summary,
            "↻" if event.recurrence_rule or event.recurring_event_id else "",
            event.sync_state.value,
            event.local_id,
        )
    console.print(table)


@events.command('list')
@click.option('--from', 'range_from', help='Range start (default: today)')
@click.option('--to', 'range_to', help='Range end (default: 30 days after start)')
@async_command
async def list_events(ctx, range_from, range_to):
    """List local events in a date range."""
    settings = ctx.obj['settings']
    zone_name = settings.sync_config.default_time_zone

    if range_from:
        start = _parse_when(range_from, zone_name)
    else:
        today = datetime.now(pytz.timezone(zone_name)).replace(hour=0, minute=0, second=0, microsecond=0)
        start = today.astimezone(pytz.UTC)
    end = _parse_when(range_to, zone_name) if range_to else start + timedelta(days=30)

    async with SyncEngine(settings) as sync_engine:
        items = sync_engine.local_calendar.list_events(start, end)
    _display_events(items, zone_name)


def _event_options(f):
    f = click.option('--summary', '-s', help='Title')(f)
    f = click.option('--start', help='Start date/time')(f)
    f = click.option('--end', help='End date/time (default: one hour after start)')(f)
    f = click.option('--type', 'event_type', help='Event type, e.g. 휴가 or 교육')(f)
    f = click.option('--description', help='Description')(f)
    f = click.option('--location', help='Location')(f)
    f = click.option('--rrule', help='Recurrence rule, e.g. FREQ=WEEKLY;BYDAY=MO')(f)
    f = click.option('--notify', is_flag=True, help='Send updates to attendees')(f)
    return f


def _build_input(
    settings: Settings,
    existing: Optional[CalendarEvent],
    summary, start, end, event_type, description, location, rrule, notify,
    scope: str = RecurrenceScope.ALL.value
) -> EventInput:
    zone_name = settings.sync_config.default_time_zone
    start_at = _parse_when(start, zone_name) if start else (existing.start_at_utc if existing else None)
    if start_at is None:
        raise click.UsageError("--start is required")
    if end:
        end_at = _parse_when(end, zone_name)
    elif existing and not start:
        end_at = existing.end_at_utc
    elif existing:
        end_at = start_at + (existing.end_at_utc - existing.start_at_utc)
    else:
        end_at = start_at + timedelta(hours=1)

    values = dict(
        summary=summary if summary is not None else (existing.summary if existing else None),
        start_at_utc=start_at,
        end_at_utc=end_at,
        event_type=event_type or (existing.event_type if existing else ''),
        description=description if description is not None else (existing.description if existing else ''),
        location=location if location is not None else (existing.location if existing else ''),
        recurrence_rule=rrule if rrule is not None else (existing.recurrence_rule if existing else None),
        time_zone=existing.time_zone if existing else zone_name,
        attendees=existing.attendees if existing else [],
        send_updates=SendUpdates.ALL if notify else SendUpdates.NONE,
        recurrence_scope=RecurrenceScope(scope),
    )
    if existing:
        values['local_id'] = existing.local_id
        if existing.recurring_event_id:
            values['original_start_time_utc'] = existing.original_start_time_utc
        elif existing.recurrence_rule and scope == RecurrenceScope.THIS.value:
            # The master row stands for the first occurrence.
            values['original_start_time_utc'] = existing.start_at_utc
    if not values['summary']:
        raise click.UsageError("--summary is required")
    return EventInput(**values)


@events.command('add')
@_event_options
@async_command
async def add_event(ctx, summary, start, end, event_type, description, location, rrule, notify):
    """Create a local event; it is pushed on the next sync."""
    settings = ctx.obj['settings']
    data = _build_input(settings, None, summary, start, end, event_type, description, location, rrule, notify)

    async with SyncEngine(settings) as sync_engine:
        event = sync_engine.local_calendar.upsert_event(data)
    console.print(f"[green]✓ Created[/green] {event.summary} ({event.local_id})")


@events.command('edit')
@click.argument('local_id')
@_event_options
@click.option('--scope', type=click.Choice(SCOPES), default=RecurrenceScope.ALL.value,
              help='Part of a recurring series to change')
@async_command
async def edit_event(ctx, local_id, summary, start, end, event_type, description, location, rrule, notify, scope):
    """Edit a local event; it is pushed on the next sync."""
    settings = ctx.obj['settings']

    async with SyncEngine(settings) as sync_engine:
        existing = sync_engine.local_calendar.get_event(local_id)
        if existing is None:
            _fail(settings, f"Event {local_id} not found")
            return
        data = _build_input(
            settings, existing, summary, start, end, event_type, description, location, rrule, notify, scope
        )
        event = sync_engine.local_calendar.upsert_event(data)
    console.print(f"[green]✓ Updated[/green] {event.summary} ({event.local_id})")


@events.command('delete')
@click.argument('local_id')
@click.option('--scope', type=click.Choice(SCOPES), default=RecurrenceScope.ALL.value,
              help='Part of a recurring series to delete')
@click.option('--notify', is_flag=True, help='Send updates to attendees')
@async_command
async def delete_event(ctx, local_id, scope, notify):
    """Delete a local event; the deletion is pushed on the next sync."""
    settings = ctx.obj['settings']

    async with SyncEngine(settings) as sync_engine:
        removed = sync_engine.local_calendar.delete_event(
            local_id,
            RecurrenceScope(scope),
            SendUpdates.ALL if notify else SendUpdates.NONE,
        )
    if not removed:
        _fail(settings, f"Event {local_id} not found")
        return
    console.print("[green]✓ Deleted[/green]")


@cli.group()
def outbox():
    """Outbox inspection commands."""
    pass


def _display_jobs(jobs: List[OutboxJob], zone_name: str) -> None:
    styles = {'QUEUED': 'blue', 'RUNNING': 'cyan', 'FAILED': 'red', 'DONE': 'green', 'CANCELLED': 'dim'}
    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Job ID", style="dim")
    table.add_column("Operation")
    table.add_column("Event")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Next retry")
    table.add_column("Last error")
    for job in jobs:
        style = styles.get(job.status.value, 'white')
        table.add_row(
            job.id,
            job.operation.value,
            job.event_summary or "",
            f"[{style}]{job.status.value}[/{style}]",
            str(job.attempts),
            _format_local(job.next_retry_at_utc, zone_name),
            job.last_error or "",
        )
    console.print(table)


@outbox.command('list')
@click.option('--all', 'include_completed', is_flag=True, help='Include done and cancelled jobs')
@click.option('--limit', type=int, default=80, show_default=True)
@async_command
async def list_outbox(ctx, include_completed, limit):
    """List queued local edits."""
    settings = ctx.obj['settings']

    async with SyncEngine(settings) as sync_engine:
        jobs = sync_engine.outbox.list_jobs(limit=limit, include_completed=include_completed)
    _display_jobs(jobs, settings.sync_config.default_time_zone)


@outbox.command('cancel')
@click.argument('job_id')
@async_command
async def cancel_outbox(ctx, job_id):
    """Cancel a queued or failed job (and the jobs depending on it)."""
    settings = ctx.obj['settings']

    async with SyncEngine(settings) as sync_engine:
        cancelled = sync_engine.outbox.cancel_outbox_job(job_id)
    if not cancelled:
        _fail(settings, f"Job {job_id} not found or no longer cancellable")
        return
    console.print(f"[green]✓ Job {job_id} cancelled[/green]")


@cli.group()
def config():
    """Manage settings."""
    pass


@config.command('create')
@click.option('--path', '-p', type=click.Path(), default='.env', show_default=True,
              help='Where to write the template')
@click.option('--force', '-f', is_flag=True, help='Replace an existing file without asking')
def create_config(path, force):
    """Write a commented settings template."""
    target = Path(path)
    if target.exists() and not force and not Confirm.ask(f"{path} exists. Replace it?"):
        console.print("[yellow]Left unchanged[/yellow]")
        return

    try:
        create_example_config(target)
    except OSError as e:
        console.print(f"[red]Could not write {path}: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]Wrote {path}[/green]; add your OAuth client id and secret to it.")


@config.command('set-client')
@click.option('--client-id', prompt=True, help='Google OAuth client ID')
@click.option('--client-secret', prompt=True, hide_input=True, help='Google OAuth client secret')
@async_command
async def set_client(ctx, client_id, client_secret):
    """Store the Google OAuth client in the local database."""
    settings = ctx.obj['settings']

    async with SyncEngine(settings) as sync_engine:
        with sync_engine.db_manager.get_session() as session:
            sync_engine.db_manager.set_oauth_client_config(session, client_id, client_secret)
    console.print("[green]✓ OAuth client stored[/green]")


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
