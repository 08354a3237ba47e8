"""Command-line interface with Rich formatting."""

import asyncio
import logging
import secrets
import sys
import webbrowser
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
from dateutil import parser as date_parser
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm, Prompt
import pytz
import structlog

from .app import CalendarApp
from .config import load_settings, create_example_config
from .database import DatabaseManager
from .event_store import EventNotFound, InvalidTransition
from .models import (
    AlertKind, CalendarEvent, ConflictResolution, EventColor, EventDraft, Recurrence,
    SyncResult, SyncStatus,
)
from .services import AuthenticationError, CalendarServiceError

console = Console()
logger = structlog.get_logger()

_STATUS_STYLE = {
    SyncStatus.LOCAL: "[yellow]local[/yellow]",
    SyncStatus.SYNCED: "[green]synced[/green]",
    SyncStatus.CONFLICT: "[red]conflict[/red]",
    SyncStatus.DELETED: "[dim]deleted[/dim]",
}


def setup_logging(level: str, debug: bool = False, log_format: Optional[str] = None) -> None:
    """Set up structured logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=log_format or "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
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


def _parse_when(value: Optional[str], tz_name: Optional[str]) -> Optional[datetime]:
    """Parse a user-entered date/time; naive values use ``tz_name`` or UTC."""
    if not value:
        return None
    try:
        parsed = date_parser.parse(value)
    except (ValueError, OverflowError) as e:
        raise click.BadParameter(f"Cannot parse date/time '{value}': {e}")
    if parsed.tzinfo is None:
        tz = pytz.timezone(tz_name) if tz_name else pytz.UTC
        parsed = tz.localize(parsed)
    return parsed


def _open_app(ctx) -> CalendarApp:
    calendar = CalendarApp(ctx.obj['settings'])
    calendar.initialize()
    return calendar


@click.group()
@click.version_option(version="1.0.0")
@click.option('--config', '-c', type=click.Path(exists=True),
              help='Path to configuration file')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose output')
@click.pass_context
def cli(ctx, config, debug, verbose):
    """offline-calsync - offline-first Google Calendar synchronization.

    Events are edited locally, even without a network connection, and kept
    consistent with one Google calendar through incremental sync.
    """
    ctx.ensure_object(dict)

    try:
        settings = load_settings(config)
        if debug:
            settings.debug = True
        if verbose:
            settings.log_level = 'DEBUG'

        ctx.obj['settings'] = settings

        setup_logging(settings.log_level, settings.debug, settings.log_format)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--host', default='127.0.0.1', help='Bind host for HTTP server')
@click.option('--port', default=34115, type=int, help='Bind port (must match the OAuth redirect URI)')
def serve(host, port):
    """Run HTTP server with the background sync scheduler."""
    try:
        import uvicorn
        uvicorn.run("offline_calsync.server:app", host=host, port=port, reload=False)
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.option('--push-only', is_flag=True, help='Only push local changes, skip pulling')
@async_command
async def sync(ctx, push_only):
    """Synchronize the local store with Google Calendar."""
    settings = ctx.obj['settings']

    try:
        async with CalendarApp(settings) as calendar:
            if not calendar.get_credential_status().connected:
                console.print(Panel(
                    "[red]Not connected to Google.[/red]\n"
                    "Run [bold]offline-calsync auth login[/bold] first.",
                    title="Authorization Required"
                ))
                sys.exit(1)

            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True
            ) as progress:
                progress.add_task("Synchronizing...", total=None)
                result = await calendar.run_sync(push_only=push_only)

        _display_sync_results(result)

    except KeyboardInterrupt:
        console.print("[yellow]Sync cancelled by user[/yellow]")
        sys.exit(1)
    except Exception as e:
        console.print(f"[red]Sync failed: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.pass_context
def status(ctx):
    """Show connection status, local event counts and recent sync activity."""
    settings = ctx.obj['settings']

    try:
        calendar = _open_app(ctx)
        _display_credential_status(calendar.get_credential_status())

        counts = calendar.store.count_by_status()
        console.print("\n[bold]Local Events[/bold]")
        for sync_status in SyncStatus:
            console.print(f"{_STATUS_STYLE[sync_status]}: {counts.get(sync_status.value, 0)}")
        has_token = calendar.store.get_sync_token() is not None
        console.print(f"Incremental sync token: {'yes' if has_token else 'no (next pull is a full listing)'}")

        _display_sync_history(calendar.get_sync_history())

    except Exception as e:
        console.print(f"[red]Failed to get status: {e}[/red]")
        if settings.debug:
            console.print_exception()
        sys.exit(1)


@cli.command()
@click.option('--interval', '-i', type=int,
              help='Sync interval in minutes (overrides config)')
@click.option('--max-runs', type=int,
              help='Maximum number of sync runs (default: infinite)')
@async_command
async def daemon(ctx, interval, max_runs):
    """Run sync passes continuously."""
    settings = ctx.obj['settings']

    if interval:
        settings.sync_config.sync_interval_minutes = interval

    sync_interval = settings.sync_config.sync_interval_minutes
    console.print(f"[green]Starting offline-calsync daemon[/green] - interval: {sync_interval} minutes")

    runs = 0
    try:
        async with CalendarApp(settings) as calendar:
            while True:
                if max_runs and runs >= max_runs:
                    console.print(f"[yellow]Reached maximum runs ({max_runs}), stopping daemon[/yellow]")
                    break

                console.print(f"\n[blue]--- Sync Run {runs + 1} at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')} ---[/blue]")

                result = await calendar.run_sync()
                _display_sync_results(result, compact=True)
                runs += 1
                logger.info("daemon_sync_completed", run=runs, pulled=result.pulled,
                            pushed=result.pushed, errors=result.errors)

                if result.unauthenticated:
                    console.print("[red]Not authorized; run 'offline-calsync auth login' and restart the daemon[/red]")
                    break

                if max_runs and runs >= max_runs:
                    break

                console.print(f"[dim]Next sync in {sync_interval} minutes...[/dim]")
                await asyncio.sleep(sync_interval * 60)

    except KeyboardInterrupt:
        console.print("\n[yellow]Daemon stopped by user[/yellow]")
        sys.exit(0)


@cli.group()
def events():
    """Local event commands. Changes are pushed on the next sync."""
    pass


@events.command('list')
@click.option('--all', 'include_deleted', is_flag=True, help='Include events pending remote deletion')
@click.pass_context
def list_events(ctx, include_deleted):
    """List local events."""
    calendar = _open_app(ctx)
    stored = calendar.store.list(include_deleted=include_deleted)
    if not stored:
        console.print("[dim]No events[/dim]")
        return
    _display_events(stored)


def _event_options(f):
    options = [
        click.option('--title', '-t', help='Event title'),
        click.option('--start', '-s', help='Start date/time'),
        click.option('--end', '-e', help='End date/time'),
        click.option('--all-day/--timed', default=None, help='All-day event'),
        click.option('--timezone', 'tz_name', help='IANA time zone for timed events'),
        click.option('--location', '-l', help='Location'),
        click.option('--description', '-d', help='Description'),
        click.option('--color', type=click.Choice([c.name.lower() for c in EventColor]), help='Palette color'),
        click.option('--alert', type=click.Choice([a.value for a in AlertKind]), help='Reminder'),
        click.option('--alert-offset', type=int, help='Custom reminder offset in minutes'),
        click.option('--recurrence', type=click.Choice([r.value for r in Recurrence]), help='Repeat rule'),
        click.option('--rrule', help='Custom RRULE line(s) for --recurrence custom'),
    ]
    for option in reversed(options):
        f = option(f)
    return f


def _collect_changes(title, start, end, all_day, tz_name, location, description,
                     color, alert, alert_offset, recurrence, rrule) -> Dict[str, Any]:
    changes: Dict[str, Any] = {
        'title': title,
        'start': _parse_when(start, tz_name),
        'end': _parse_when(end, tz_name),
        'all_day': all_day,
        'timezone': tz_name,
        'location': location,
        'description': description,
        'color': EventColor[color.upper()] if color else None,
        'alert': AlertKind(alert) if alert else None,
        'alert_offset': alert_offset,
        'recurrence': Recurrence(recurrence) if recurrence else None,
        'recurrence_custom': rrule,
    }
    return {name: value for name, value in changes.items() if value is not None}


@events.command('add')
@_event_options
@click.pass_context
def add_event(ctx, **options):
    """Create a local event."""
    changes = _collect_changes(**options)
    if 'start' not in changes:
        raise click.UsageError("--start is required")
    changes.setdefault('end', changes['start'])
    try:
        draft = EventDraft(**changes)
    except ValueError as e:
        console.print(f"[red]Invalid event: {e}[/red]")
        sys.exit(1)

    event = _open_app(ctx).create_event(draft)
    console.print(f"[green]✓ Created event {event.id}[/green] (pending push)")


@events.command('edit')
@click.argument('event_id')
@_event_options
@click.pass_context
def edit_event(ctx, event_id, **options):
    """Edit a local event."""
    changes = _collect_changes(**options)
    if not changes:
        console.print("[yellow]Nothing to change[/yellow]")
        return
    try:
        event = _open_app(ctx).edit_event(event_id, changes)
    except EventNotFound as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except ValueError as e:
        console.print(f"[red]Invalid event: {e}[/red]")
        sys.exit(1)
    console.print(f"[green]✓ Updated event {event.id}[/green] ({event.sync_status.value})")


@events.command('delete')
@click.argument('event_id')
@click.pass_context
def delete_event(ctx, event_id):
    """Delete a local event."""
    try:
        removed = _open_app(ctx).delete_event(event_id)
    except EventNotFound as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    if removed:
        console.print(f"[green]✓ Deleted event {event_id}[/green]")
    else:
        console.print(f"[green]✓ Event {event_id} will be deleted from Google on the next sync[/green]")


@events.command('search')
@click.argument('query')
@click.option('--from', 'from_date', help='Only events starting at or after this date')
@click.option('--to', 'to_date', help='Only events starting at or before this date')
@click.option('--limit', default=0, type=int, help='Maximum results (1-200)')
@click.pass_context
def search_events(ctx, query, from_date, to_date, limit):
    """Search events by title, description and location."""
    found = _open_app(ctx).search_events(
        query,
        from_date=_parse_when(from_date, None),
        to_date=_parse_when(to_date, None),
        limit=limit,
    )
    if not found:
        console.print("[dim]No matching events found[/dim]")
        return
    _display_events(found)


@cli.command()
@click.pass_context
def conflicts(ctx):
    """Show events in conflict."""
    conflicted = _open_app(ctx).list_conflicts()
    if not conflicted:
        console.print("[green]No unresolved conflicts found[/green]")
        return

    console.print(f"[yellow]Found {len(conflicted)} unresolved conflicts:[/yellow]")
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Title")
    table.add_column("Start")
    table.add_column("Remote Event")
    table.add_column("Remote Updated")
    for event in conflicted:
        table.add_row(
            event.id,
            event.title,
            event.start.strftime("%Y-%m-%d %H:%M"),
            event.remote_event_id or "[red]deleted remotely[/red]",
            event.remote_updated_at.strftime("%Y-%m-%d %H:%M") if event.remote_updated_at else "N/A",
        )
    console.print(table)
    console.print("[dim]Use 'offline-calsync resolve <id> --keep local|remote' to resolve.[/dim]")


@cli.command()
@click.argument('event_id')
@click.option('--keep', type=click.Choice(['local', 'remote']), required=True,
              help='Which version wins')
@async_command
async def resolve(ctx, event_id, keep):
    """Resolve a conflicted event."""
    settings = ctx.obj['settings']
    resolution = ConflictResolution.KEEP_LOCAL if keep == 'local' else ConflictResolution.KEEP_REMOTE

    try:
        async with CalendarApp(settings) as calendar:
            event = await calendar.resolve_conflict(event_id, resolution)
    except (EventNotFound, InvalidTransition) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)
    except CalendarServiceError as e:
        console.print(f"[red]Could not read the remote version: {e}[/red]")
        sys.exit(1)

    if event is None:
        console.print(f"[green]✓ Event {event_id} removed (it no longer exists in Google)[/green]")
    else:
        console.print(f"[green]✓ Event {event_id} resolved[/green] ({event.sync_status.value})")


@cli.group()
def auth():
    """Google account authorization."""
    pass


@auth.command('login')
@click.option('--no-browser', is_flag=True, help='Print the URL instead of opening a browser')
@async_command
async def auth_login(ctx, no_browser):
    """Connect a Google account."""
    settings = ctx.obj['settings']
    calendar = CalendarApp(settings)
    state = secrets.token_urlsafe(16)

    try:
        url = calendar.begin_authorization(state)
    except AuthenticationError as e:
        console.print(Panel(f"[red]{e}[/red]", title="Configuration Error"))
        sys.exit(1)

    console.print(Panel(
        f"Open this URL and grant access:\n\n{url}\n\n"
        "If 'offline-calsync serve' is running, the redirect completes the login.\n"
        "Otherwise copy the 'code' parameter from the redirect URL below.",
        title="Google Authorization"
    ))
    if not no_browser:
        webbrowser.open(url)

    code = Prompt.ask("Authorization code")
    try:
        status = await calendar.exchange_authorization_code(code.strip(), state)
    except CalendarServiceError as e:
        console.print(f"[red]Authorization failed: {e}[/red]")
        sys.exit(1)
    finally:
        await calendar.cleanup()

    console.print(f"[green]✓ Connected as {status.user_email or 'unknown account'}[/green]")


@auth.command('logout')
@async_command
async def auth_logout(ctx):
    """Disconnect the Google account and revoke its token."""
    calendar = CalendarApp(ctx.obj['settings'])
    await calendar.logout()
    console.print("[green]✓ Disconnected[/green]")


@auth.command('status')
@click.pass_context
def auth_status(ctx):
    """Show the Google connection status."""
    calendar = CalendarApp(ctx.obj['settings'])
    _display_credential_status(calendar.get_credential_status())


@cli.command()
@click.option('--country', default='us', help='Country or locale code (us, uk, kr, au, ca, in)')
@async_command
async def holidays(ctx, country):
    """Show public holidays for this year and next."""
    settings = ctx.obj['settings']
    try:
        async with CalendarApp(settings) as calendar:
            entries = await calendar.list_holidays(country)
    except CalendarServiceError as e:
        console.print(f"[red]Failed to load holidays: {e}[/red]")
        sys.exit(1)

    table = Table(show_header=True, header_style="bold magenta", title=f"Holidays ({country})")
    table.add_column("Date", style="cyan")
    table.add_column("Holiday")
    for entry in entries:
        table.add_row(entry.day.isoformat(), entry.title)
    console.print(table)


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

    try:
        create_example_config(config_path)
        console.print(f"[green]Configuration file created at {path}[/green]")
        console.print("Please edit the file with your Google OAuth client.")
    except OSError as e:
        console.print(f"[red]Failed to create configuration file: {e}[/red]")


@config.command('validate')
@click.pass_context
def validate_config(ctx):
    """Validate the current configuration."""
    settings = ctx.obj['settings']

    missing_fields = settings.validate_required_settings()

    if missing_fields:
        console.print(Panel(
            f"[red]Missing required fields:[/red]\n" +
            "\n".join(f"• {field}" for field in missing_fields),
            title="Configuration Validation",
            border_style="red"
        ))
        sys.exit(1)
    else:
        console.print(Panel(
            "[green]✓ All required configuration fields are present[/green]",
            title="Configuration Validation",
            border_style="green"
        ))


@cli.command()
@click.confirmation_option(prompt='Are you sure you want to delete all local events and sync data?')
@click.pass_context
def reset(ctx):
    """Delete all local events, the sync token and sync history."""
    settings = ctx.obj['settings']

    try:
        DatabaseManager(settings).reset_db()
        console.print("[green]✓ All local data has been reset[/green]")
        console.print("[yellow]⚠️  Next sync will perform a full listing[/yellow]")

    except Exception as e:
        console.print(f"[red]Failed to reset local data: {e}[/red]")
        sys.exit(1)


def _display_sync_results(result: SyncResult, compact: bool = False):
    """Display sync results."""
    if result.skipped:
        console.print("[yellow]Another sync is already running[/yellow]")
        return

    if compact:
        style = "green" if result.ok else "yellow"
        console.print(
            f"[{style}]pulled {result.pulled}, pushed {result.pushed}, deleted {result.deleted}, "
            f"conflicts {result.conflicts}, errors {result.errors}[/{style}]"
        )
        if result.error_message:
            console.print(f"   {result.error_message}")
        return

    table = Table(show_header=True, header_style="bold magenta", title="Sync Results")
    table.add_column("Pulled", justify="center")
    table.add_column("Pushed", justify="center")
    table.add_column("Deleted", justify="center")
    table.add_column("Conflicts", justify="center")
    table.add_column("Errors", justify="center")
    table.add_row(
        str(result.pulled),
        str(result.pushed),
        str(result.deleted),
        f"[yellow]{result.conflicts}[/yellow]" if result.conflicts else "0",
        f"[red]{result.errors}[/red]" if result.errors else "0",
    )
    console.print(table)

    if result.full_sync:
        console.print("[dim]Full listing performed[/dim]")
    if result.duration_seconds is not None:
        console.print(f"[dim]Completed in {result.duration_seconds:.1f} seconds[/dim]")

    if result.conflicts:
        console.print(Panel(
            f"[yellow]{result.conflicts} events are in conflict[/yellow]\n"
            "Use [bold]offline-calsync conflicts[/bold] to review and resolve them.",
            title="Conflicts Detected",
            border_style="yellow"
        ))
    if result.error_message:
        console.print(Panel(
            result.error_message,
            title="[red]Errors[/red]",
            border_style="red"
        ))


def _display_events(stored: List[CalendarEvent]):
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Start")
    table.add_column("End")
    table.add_column("Title")
    table.add_column("Location")
    table.add_column("Status")
    for event in stored:
        fmt = "%Y-%m-%d" if event.all_day else "%Y-%m-%d %H:%M"
        table.add_row(
            event.id,
            event.start.strftime(fmt),
            event.end.strftime(fmt),
            event.title,
            event.location or "",
            _STATUS_STYLE[event.sync_status],
        )
    console.print(table)


def _display_credential_status(credential_status):
    if not credential_status.client_configured:
        console.print("[red]✗ Google OAuth client not configured[/red] (see 'offline-calsync config validate')")
    if credential_status.connected:
        account = credential_status.user_email or "unknown account"
        console.print(f"[green]✓ Connected to Google as {account}[/green]")
        if credential_status.expires_at:
            console.print(f"[dim]Access token expires at {credential_status.expires_at.isoformat()}[/dim]")
        if not credential_status.has_refresh_token:
            console.print("[yellow]⚠️  No refresh token stored; you will need to log in again when it expires[/yellow]")
    else:
        console.print("[yellow]Not connected to Google[/yellow]")


def _display_sync_history(history: List[Dict[str, Any]]):
    if not history:
        return
    console.print("\n[bold]Recent Sync Sessions[/bold]")

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Started", style="dim")
    table.add_column("Status")
    table.add_column("Kind")
    table.add_column("Pulled/Pushed/Deleted", justify="center")
    table.add_column("Conflicts", justify="center")
    table.add_column("Errors", justify="center")

    status_color = {
        'completed': 'green',
        'partial': 'yellow',
        'unauthenticated': 'red',
        'interrupted': 'red',
        'failed': 'red',
    }
    for entry in history:
        color = status_color.get(entry['status'], 'white')
        kind = 'push' if entry['push_only'] else ('full' if entry['full_sync'] else 'incremental')
        table.add_row(
            entry['started_at'].strftime("%m-%d %H:%M"),
            f"[{color}]{entry['status']}[/{color}]",
            kind,
            f"{entry['pulled']}/{entry['pushed']}/{entry['deleted']}",
            str(entry['conflicts']),
            str(entry['errors']),
        )
    console.print(table)


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
