"""Command-line interface for running and operating channel sync."""

import asyncio
import logging
import signal
import sys
from datetime import date, timedelta
from pathlib import Path

import click
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.prompt import Confirm
import structlog

from .broker import DEATH_REASON_HEADER, Topology
from .config import create_example_config, load_settings
from .conflicts import ConflictActionError
from .context import ChannelNotConfiguredError
from .crypto import generate_key
from .database import as_utc
from .mapping import MappingConflictError
from .models import ConflictResolution, Direction, MappingType
from .scheduler import PullSyncScheduler, TickOutcome
from .server import SyncRuntime
from .webhooks import WebhookError

console = Console()
logger = structlog.get_logger()


def setup_logging(level: str, debug: bool = False, log_format: str = None) -> None:
    """Set up structured logging."""
    logging.basicConfig(level=getattr(logging, level, logging.INFO), format=log_format)
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


def install_shutdown_handlers(shutdown_event: asyncio.Event, received: dict) -> None:
    """Set shutdown_event on SIGINT/SIGTERM, remembering which signal arrived."""
    loop = asyncio.get_running_loop()

    def handler(sig) -> None:
        received['signal'] = sig.name
        logger.info("Shutdown signal received", signal=sig.name)
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, handler, sig)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            pass


def _runtime(ctx) -> SyncRuntime:
    runtime = SyncRuntime(ctx.obj['settings'])
    runtime.db_manager.init_db()
    return runtime


def _fail(message: str, ctx=None) -> None:
    console.print(f"[red]{message}[/red]")
    if ctx is not None and ctx.obj['settings'].debug:
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
    """Channel Sync - keeps PMS reservations and channel managers consistent.

    Webhooks and PMS changes are recorded in an idempotent event ledger,
    routed through per-channel queues and applied by inbound and outbound
    workers with retry and dead-lettering. A scheduler pulls bookings
    periodically as a safety net.
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
@click.option('--host', help='Bind host for HTTP server (defaults to HOST)')
@click.option('--port', type=int, help='Bind port for HTTP server (defaults to PORT)')
@click.pass_context
def serve(ctx, host, port):
    """Run the webhook server with the outbox sweeper."""
    settings = ctx.obj['settings']
    try:
        import uvicorn
        uvicorn.run(
            "channel_sync.server:app",
            host=host or settings.host,
            port=port or settings.port,
            reload=False
        )
    except Exception as e:
        console.print(f"[red]Failed to start server: {e}[/red]")
        sys.exit(1)


@cli.command()
@click.argument('direction', type=click.Choice(['inbound', 'outbound']))
@click.option('--channel', required=True, help='Channel name, e.g. siteminder')
@click.option('--max-messages', type=int, help='Exit after this many messages')
@async_command
async def worker(ctx, direction, channel, max_messages):
    """Consume one queue of a channel integration."""
    runtime = _runtime(ctx)
    try:
        consumer = runtime.worker(Direction(direction), channel)
    except ChannelNotConfiguredError as e:
        await runtime.broker.close()
        _fail(str(e))

    shutdown_event = asyncio.Event()
    received = {}
    install_shutdown_handlers(shutdown_event, received)

    console.print(f"[green]Consuming {consumer.queue}[/green] (Ctrl+C to stop)")
    task = asyncio.create_task(consumer.run(max_messages=max_messages))
    stopper = asyncio.create_task(shutdown_event.wait())
    try:
        await asyncio.wait([task, stopper], return_when=asyncio.FIRST_COMPLETED)
        if shutdown_event.is_set():
            # The in-flight message finishes before run() returns
            consumer.stop()
            await task
    finally:
        stopper.cancel()
        await runtime.broker.close()
    console.print(f"[yellow]Worker stopped after {consumer.processed} messages[/yellow]")


@cli.command()
@click.option('--channel', required=True, help='Channel name')
@async_command
async def scheduler(ctx, channel):
    """Run the periodic pull-sync scheduler for a channel."""
    settings = ctx.obj['settings']
    runtime = _runtime(ctx)
    try:
        context = runtime.context(channel)
    except ChannelNotConfiguredError as e:
        _fail(str(e))

    pull = PullSyncScheduler(context, settings, runtime.db_manager)
    shutdown_event = asyncio.Event()
    received = {}
    install_shutdown_handlers(shutdown_event, received)

    await pull.start()
    console.print(
        f"[green]Pull-sync scheduler running for {channel}[/green] "
        f"every {settings.scheduler.interval_ms / 1000:.0f}s (Ctrl+C to stop)"
    )
    try:
        await shutdown_event.wait()
    finally:
        await pull.stop(received.get('signal', 'shutdown'))
        await runtime.broker.close()
    console.print("[yellow]Scheduler stopped[/yellow]")


@cli.command()
@click.option('--channel', required=True, help='Channel name')
@click.option('--full', is_flag=True, help='Pull the whole lookback window')
@async_command
async def sync(ctx, channel, full):
    """Run one pull sync now, under the same lock as the scheduler."""
    settings = ctx.obj['settings']
    runtime = _runtime(ctx)
    try:
        context = runtime.context(channel)
    except ChannelNotConfiguredError as e:
        _fail(str(e))

    pull = PullSyncScheduler(context, settings, runtime.db_manager)
    try:
        with Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            console=console,
            transient=True
        ) as progress:
            progress.add_task(f"Pulling {channel} bookings...", total=None)
            outcome = await pull.run_once(full_sync=full)
    finally:
        await runtime.broker.close()

    if pull.last_report is not None:
        _display_pull_report(pull.last_report)

    if outcome == TickOutcome.COMPLETED:
        console.print("[green]✓ Sync completed[/green]")
    elif outcome == TickOutcome.CONTENDED:
        console.print("[yellow]Another sync is running; nothing done[/yellow]")
    elif outcome == TickOutcome.DISABLED:
        console.print(f"[yellow]Pull sync is disabled for {channel}[/yellow]")
    else:
        _fail("Sync failed; see `channel-sync status` for the recorded error")


@cli.command()
@click.option('--days', default=7, type=int, help='Statistics window in days')
@async_command
async def status(ctx, days):
    """Show channel configs, queue depths and recent sync activity."""
    runtime = _runtime(ctx)
    try:
        with runtime.db_manager.get_session() as session:
            configs = runtime.db_manager.get_channel_configs(session, runtime.settings.property_id)
            states = runtime.db_manager.get_recent_sync_states(session, limit=10)
            stats = runtime.db_manager.get_sync_statistics(session, days)
            integrity = runtime.db_manager.validate_database_integrity(session)

        health = await runtime.health()
    except Exception as e:
        _fail(f"Failed to get status: {e}", ctx)
    finally:
        await runtime.broker.close()

    table = Table(show_header=True, header_style="bold magenta", title="Channels")
    table.add_column("Channel", style="cyan")
    table.add_column("Sync", justify="center")
    table.add_column("Push", justify="center")
    table.add_column("Pull", justify="center")
    table.add_column("Last success")
    table.add_column("Failures", justify="center")
    table.add_column("Last error", style="red")
    for config in configs:
        last = as_utc(config.last_successful_sync)
        table.add_row(
            config.channel,
            _flag(config.sync_enabled),
            _flag(config.push_sync_enabled),
            _flag(config.pull_sync_enabled),
            last.strftime('%Y-%m-%d %H:%M:%S') if last else "never",
            str(config.consecutive_failures),
            (config.last_sync_error or "")[:60],
        )
    console.print(table)

    queues = Table(show_header=True, header_style="bold blue", title="Queues")
    queues.add_column("Queue", style="cyan")
    queues.add_column("Depth", justify="right")
    queues.add_column("Dead letters", justify="right")
    for name, info in health['queues'].items():
        queues.add_row(name, str(info['depth']), str(info['dead_letters']))
    console.print(queues)

    runs = Table(show_header=True, header_style="bold green", title="Recent sync runs")
    runs.add_column("Sync type", style="dim")
    runs.add_column("Status")
    runs.add_column("Started")
    runs.add_column("Processed", justify="right")
    runs.add_column("Failed", justify="right")
    runs.add_column("Error", style="red")
    for state in states:
        runs.add_row(
            state.sync_type,
            state.status,
            as_utc(state.started_at).strftime('%Y-%m-%d %H:%M:%S'),
            str(state.items_processed),
            str(state.items_failed),
            (state.error_message or "")[:50],
        )
    console.print(runs)

    console.print(Panel(
        f"Runs: {stats['completed_runs']} completed, {stats['failed_runs']} failed of {stats['total_runs']}\n"
        f"Events: {stats['done_events']} done, {stats['failed_events']} failed of {stats['total_events']}\n"
        f"Pending publish: {stats['pending_publish']}\n"
        f"Open conflicts: {integrity['open_conflicts']}",
        title=f"Last {days} days"
    ))
    if not integrity['healthy']:
        console.print(Panel(
            "\n".join(f"• {issue}" for issue in integrity['issues']),
            title="[red]Integrity issues[/red]",
            border_style="red"
        ))


# -- dead letters -----------------------------------------------------------


@cli.group()
def dlq():
    """Inspect and replay dead-lettered events."""
    pass


@dlq.command('list')
@click.option('--channel', required=True, help='Channel name')
@click.option('--direction', '-d', type=click.Choice(['inbound', 'outbound']), help='Only one queue')
@click.option('--limit', default=50, type=int)
@async_command
async def dlq_list(ctx, channel, direction, limit):
    """List dead letters with their ledger status."""
    runtime = _runtime(ctx)
    topology = Topology(channel.lower())
    queues = [topology.queue(Direction(direction))] if direction else topology.queues
    try:
        table = Table(show_header=True, header_style="bold magenta", title=f"{channel} dead letters")
        table.add_column("Event ID", style="dim")
        table.add_column("Routing key", style="cyan")
        table.add_column("Reason")
        table.add_column("Ledger status")
        table.add_column("Attempts", justify="center")
        table.add_column("Last error", style="red")
        for queue in queues:
            for delivery in await runtime.broker.list_dead_letters(queue, limit=limit):
                event = runtime.ledger.get(delivery.message_id)
                table.add_row(
                    delivery.message_id,
                    delivery.routing_key,
                    str(delivery.headers.get(DEATH_REASON_HEADER, '')),
                    event.status if event else "missing",
                    f"{event.attempts}/{event.max_attempts}" if event else "",
                    ((event.last_error if event else None) or "")[:60],
                )
        console.print(table)
    finally:
        await runtime.broker.close()


@dlq.command('replay')
@click.argument('event_id', required=False)
@click.option('--channel', required=True, help='Channel name')
@click.option('--all', 'replay_all', is_flag=True, help='Replay every failed event of the channel')
@async_command
async def dlq_replay(ctx, event_id, channel, replay_all):
    """Reset failed events and publish them again."""
    if not event_id and not replay_all:
        _fail("Pass an EVENT_ID or --all")

    runtime = _runtime(ctx)
    try:
        if replay_all:
            events, _ = runtime.ledger.list_failed(channel=channel.lower(), limit=1000)
            event_ids = [str(e.id) for e in events]
        else:
            event_ids = [event_id]

        replayed = 0
        for eid in event_ids:
            try:
                result = await runtime.ingest.retry(channel, eid)
                console.print(f"[green]✓ {eid}[/green] {result['message']}")
                replayed += 1
            except WebhookError as e:
                console.print(f"[red]✗ {eid}: {e.detail}[/red]")
        console.print(f"Replayed {replayed}/{len(event_ids)} events")
    finally:
        await runtime.broker.close()


# -- conflicts --------------------------------------------------------------


@cli.group()
def conflicts():
    """Reconcile and triage PMS vs channel conflicts."""
    pass


@conflicts.command('list')
@click.option('--channel', help='Only conflicts of one channel')
@click.pass_context
def conflicts_list(ctx, channel):
    """Show open conflicts."""
    runtime = _runtime(ctx)
    config_id = runtime.context(channel).config_id if channel else None
    open_conflicts = runtime.conflict_detector().list_open_conflicts(config_id)
    if not open_conflicts:
        console.print("[green]No open conflicts[/green]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("ID", style="dim")
    table.add_column("Reservation")
    table.add_column("Booking")
    table.add_column("Description")
    table.add_column("Created")
    for conflict in open_conflicts:
        table.add_row(
            str(conflict.id),
            conflict.reservation_id or "",
            conflict.external_booking_id or "",
            conflict.description,
            as_utc(conflict.created_at).strftime('%Y-%m-%d %H:%M'),
        )
    console.print(table)


@conflicts.command('reconcile')
@click.option('--channel', required=True, help='Channel name')
@click.option('--from', 'date_from', type=click.DateTime(formats=['%Y-%m-%d']), help='First arrival date (default today)')
@click.option('--to', 'date_to', type=click.DateTime(formats=['%Y-%m-%d']), help='Last arrival date (default +90 days)')
@async_command
async def conflicts_reconcile(ctx, channel, date_from, date_to):
    """Compare channel bookings with PMS reservations and record conflicts."""
    runtime = _runtime(ctx)
    start = date_from.date() if date_from else date.today()
    end = date_to.date() if date_to else start + timedelta(days=90)
    try:
        report = await runtime.conflict_detector().reconcile(runtime.context(channel), start, end)
    except Exception as e:
        _fail(f"Reconciliation failed: {e}", ctx)
    finally:
        await runtime.broker.close()

    console.print(Panel(
        f"Checked: {report.checked}\n"
        f"Conflicts: {report.conflicts}\n"
        f"Only in PMS: {report.only_in_pms}\n"
        f"Only in {channel}: {report.only_in_channel}",
        title=f"Reconciliation {start} .. {end}",
        border_style="yellow" if report.conflicts else "green"
    ))


@conflicts.command('resolve')
@click.argument('conflict_id')
@click.option('--strategy', '-s', required=True,
              type=click.Choice(['pms_wins', 'channel_wins', 'newest_wins']),
              help='Which side wins')
@async_command
async def conflicts_resolve(ctx, conflict_id, strategy):
    """Resolve a conflict by applying one side's values."""
    runtime = _runtime(ctx)
    try:
        conflict = await runtime.conflict_detector().resolve_conflict(conflict_id, ConflictResolution(strategy))
        console.print(f"[green]✓ Conflict {conflict.id} resolved ({conflict.resolution})[/green]")
    except ConflictActionError as e:
        _fail(str(e))
    finally:
        await runtime.broker.close()


@conflicts.command('ignore')
@click.argument('conflict_id')
@click.pass_context
def conflicts_ignore(ctx, conflict_id):
    """Close a conflict without changing either side."""
    runtime = _runtime(ctx)
    try:
        conflict = runtime.conflict_detector().ignore_conflict(conflict_id)
        console.print(f"[green]✓ Conflict {conflict.id} ignored[/green]")
    except ConflictActionError as e:
        _fail(str(e))


# -- mappings ---------------------------------------------------------------


@cli.group()
def mappings():
    """Manage PMS to channel ID mappings."""
    pass


@mappings.command('list')
@click.option('--channel', required=True, help='Channel name')
@click.option('--type', 'mapping_type', type=click.Choice([t.value for t in MappingType]))
@click.option('--all', 'include_inactive', is_flag=True, help='Include inactive mappings')
@click.pass_context
def mappings_list(ctx, channel, mapping_type, include_inactive):
    """Show mappings for a channel."""
    runtime = _runtime(ctx)
    context = runtime.context(channel)
    with runtime.db_manager.get_session() as session:
        rows = runtime.mappings.list_mappings(
            session, context.config_id,
            MappingType(mapping_type) if mapping_type else None,
            include_inactive=include_inactive
        )

    table = Table(show_header=True, header_style="bold magenta", title=f"{channel} mappings")
    table.add_column("Type", style="cyan")
    table.add_column("PMS ID")
    table.add_column("Channel ID")
    table.add_column("Direction", justify="center")
    table.add_column("Active", justify="center")
    table.add_column("Last synced")
    for row in rows:
        synced = as_utc(row.last_synced_at)
        table.add_row(
            row.mapping_type,
            row.internal_id,
            row.external_id,
            row.sync_direction or "",
            _flag(row.is_active),
            synced.strftime('%Y-%m-%d %H:%M') if synced else "",
        )
    console.print(table)


@mappings.command('create')
@click.argument('mapping_type', type=click.Choice([t.value for t in MappingType]))
@click.argument('internal_id')
@click.argument('external_id')
@click.option('--channel', required=True, help='Channel name')
@click.pass_context
def mappings_create(ctx, mapping_type, internal_id, external_id, channel):
    """Link a PMS id to a channel id."""
    runtime = _runtime(ctx)
    context = runtime.context(channel)
    with runtime.db_manager.get_session() as session:
        try:
            runtime.mappings.create_mapping(
                session, context.config_id, MappingType(mapping_type), internal_id, external_id
            )
            session.commit()
        except MappingConflictError as e:
            _fail(str(e))
    console.print(f"[green]✓ Mapped {mapping_type} {internal_id} → {external_id}[/green]")


@mappings.command('deactivate')
@click.argument('mapping_type', type=click.Choice([t.value for t in MappingType]))
@click.argument('internal_id')
@click.option('--channel', required=True, help='Channel name')
@click.pass_context
def mappings_deactivate(ctx, mapping_type, internal_id, channel):
    """Deactivate the active mapping of a PMS id."""
    runtime = _runtime(ctx)
    context = runtime.context(channel)
    with runtime.db_manager.get_session() as session:
        mapping = runtime.mappings.get_active(
            session, context.config_id, MappingType(mapping_type), internal_id=internal_id
        )
        if mapping is None:
            _fail(f"No active {mapping_type} mapping for {internal_id}")
        runtime.mappings.deactivate(session, mapping)
        session.commit()
    console.print(f"[green]✓ Deactivated {mapping_type} mapping for {internal_id}[/green]")


# -- channels ---------------------------------------------------------------


@cli.group()
def channels():
    """Manage channel integrations for this property."""
    pass


@channels.command('add')
@click.argument('channel')
@click.option('--base-url', required=True, help='Channel manager API base URL')
@click.option('--api-key', prompt=True, hide_input=True, help='API key (stored encrypted)')
@click.option('--webhook-secret', prompt=True, hide_input=True, help='Webhook HMAC secret (stored encrypted)')
@click.option('--hotel-id', help='Hotel ID inside the channel manager')
@click.option('--push/--no-push', default=True, help='Push PMS changes to the channel')
@click.option('--pull/--no-pull', default=True, help='Pull channel bookings into the PMS')
@click.option('--availability/--no-availability', default=True, help='Push availability')
@click.option('--rates/--no-rates', default=True, help='Push rates')
@click.pass_context
def channels_add(ctx, channel, base_url, api_key, webhook_secret, hotel_id, push, pull, availability, rates):
    """Register a channel integration."""
    runtime = _runtime(ctx)
    try:
        context = runtime.resolver.register(
            runtime.settings.property_id,
            channel,
            api_key=api_key,
            webhook_secret=webhook_secret,
            base_url=base_url,
            external_hotel_id=hotel_id,
            push_sync_enabled=push,
            pull_sync_enabled=pull,
            sync_availability=availability,
            sync_rates=rates,
        )
    except ChannelNotConfiguredError as e:
        _fail(f"{e}. Generate one with `channel-sync config keygen`.")
    console.print(f"[green]✓ Registered {context.channel}[/green] ({context.config_id})")
    console.print(f"Webhook URL: /integrations/{context.integration}/webhooks")


@channels.command('list')
@click.pass_context
def channels_list(ctx):
    """Show channel integrations."""
    runtime = _runtime(ctx)
    with runtime.db_manager.get_session() as session:
        configs = runtime.db_manager.get_channel_configs(session, runtime.settings.property_id)

    table = Table(show_header=True, header_style="bold blue")
    table.add_column("Channel", style="cyan")
    table.add_column("ID", style="dim")
    table.add_column("Base URL")
    table.add_column("Push", justify="center")
    table.add_column("Pull", justify="center")
    table.add_column("Availability", justify="center")
    table.add_column("Rates", justify="center")
    for config in configs:
        table.add_row(
            config.channel,
            str(config.id),
            config.base_url or "",
            _flag(config.push_sync_enabled),
            _flag(config.pull_sync_enabled),
            _flag(config.sync_availability),
            _flag(config.sync_rates),
        )
    console.print(table)


# -- configuration ----------------------------------------------------------


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
        console.print("Please edit the file with your actual values.")
    except Exception as e:
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


@config.command('keygen')
def keygen():
    """Print a new ENCRYPTION_KEY for stored credentials."""
    console.print(f"ENCRYPTION_KEY={generate_key()}")


def _flag(value: bool) -> str:
    return "✓" if value else "✗"


def _display_pull_report(report) -> None:
    """Display pull sync results."""
    table = Table(show_header=True, header_style="bold magenta", title="Pull Results")
    table.add_column("Processed", justify="center")
    table.add_column("Created", justify="center")
    table.add_column("Updated", justify="center")
    table.add_column("Skipped", justify="center", style="dim")
    table.add_column("Failed", justify="center", style="red")
    table.add_row(
        str(report.processed), str(report.created), str(report.updated),
        str(report.skipped), str(report.failed)
    )
    console.print(table)

    skipped = [r for r in report.results if r.error and r.action.value == 'skipped']
    if skipped:
        console.print(Panel(
            "\n".join(f"• {r.error}" for r in skipped),
            title="[yellow]Skipped[/yellow]",
            border_style="yellow"
        ))
    if report.errors:
        console.print(Panel(
            "\n".join(f"• {error}" for error in report.errors),
            title="[red]Errors[/red]",
            border_style="red"
        ))


def main():
    """Entry point for the CLI."""
    cli()


if __name__ == '__main__':
    main()
