"""Command-line interface for storesync.

Commands inspect sync state (status, history, queue), run batches, retry
failed operations, resolve conflicts and feed verified webhook payloads to
the engine.
"""

import asyncio
import json
import logging
import sys
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict

import click
from rich.console import Console
from rich.panel import Panel
from rich.prompt import Confirm
from rich.table import Table

from . import __version__
from .config import SYNC_INTERVAL_PRESETS, RemoteEnvironment, SettingsManager
from .dependencies import build_engine
from .sync.conflict_resolver import Resolution
from .sync.engine import SyncEngine
from .sync.errors import SyncError
from .sync.models import (
    ConflictStrategy,
    EntityKind,
    OperationStatus,
    SyncDirection,
    SyncState,
)
from .sync.scheduler import SyncScheduler

console = Console()

STATE_STYLES = {
    SyncState.SYNCED: "green",
    SyncState.PENDING: "yellow",
    SyncState.FAILED: "red",
    SyncState.CONFLICT: "magenta",
    SyncState.DISABLED: "dim",
}


def _run_with_engine(ctx: click.Context, action: Callable[[SyncEngine], Awaitable[Any]]) -> Any:
    """Build the engine, run an async action against it and close the remote client."""
    async def runner():
        engine = build_engine(ctx.obj['settings'])
        try:
            return await action(engine)
        finally:
            await engine.remote.close()

    try:
        return asyncio.run(runner())
    except SyncError as e:
        console.print(f"[red]{type(e).__name__}: {e}[/red]")
        sys.exit(1)


def _print_json(data: Any):
    # plain echo, rich would wrap long lines
    click.echo(json.dumps(data, indent=2, default=str))


def _parse_uuid(value: str, label: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError:
        raise click.BadParameter(f"{value!r} is not a valid {label}")


@click.group()
@click.option("--config-dir", type=click.Path(file_okay=False), help="Directory holding storesync.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.version_option(__version__, prog_name="storesync")
@click.pass_context
def main(ctx, config_dir, verbose):
    """Synchronize local customers and inventory with the remote commerce platform."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    )
    ctx.ensure_object(dict)
    manager = SettingsManager(Path(config_dir) if config_dir else None)
    ctx.obj['manager'] = manager
    ctx.obj['settings'] = manager.settings.apply_env_overrides()


@main.command("configure")
@click.option("--access-token", help="Remote API access token")
@click.option("--merchant-id", help="Remote merchant id")
@click.option("--location-id", help="Remote location id")
@click.option("--webhook-key", help="Signature key for incoming webhooks")
@click.option("--environment", type=click.Choice([e.value for e in RemoteEnvironment]))
@click.option("--interval", type=click.Choice(list(SYNC_INTERVAL_PRESETS)), help="Scheduled sync interval")
@click.option("--strategy", type=click.Choice([s.value for s in ConflictStrategy]),
              help="Default conflict strategy for new mappings")
@click.option("--direction", type=click.Choice([d.value for d in SyncDirection]),
              help="Default sync direction for new mappings")
@click.option("--enable/--disable", default=None, help="Enable or disable remote sync")
@click.pass_context
def configure(ctx, access_token, merchant_id, location_id, webhook_key, environment, interval, strategy,
              direction, enable):
    """Update and save sync settings."""
    manager: SettingsManager = ctx.obj['manager']
    settings = manager.settings
    if access_token:
        settings.credentials.access_token = access_token
    if merchant_id:
        settings.credentials.merchant_id = merchant_id
    if location_id:
        settings.credentials.location_id = location_id
    if webhook_key:
        settings.credentials.webhook_signature_key = webhook_key
    if environment:
        settings.credentials.environment = RemoteEnvironment(environment)
    if interval:
        settings.sync_interval = SYNC_INTERVAL_PRESETS[interval]
    if strategy:
        settings.default_strategy = ConflictStrategy(strategy)
    if direction:
        settings.default_direction = SyncDirection(direction)
    if enable is not None:
        settings.enabled = enable

    manager.save()
    console.print(f"[green]Saved settings to {manager.config_file}[/green]")
    missing = settings.missing_fields()
    if missing:
        console.print(f"[yellow]Still missing: {', '.join(missing)}[/yellow]")


@main.command("status")
@click.option("--json", "output_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def status(ctx, output_json):
    """Show mapping counts, queue size and last sync."""
    async def action(engine: SyncEngine):
        return engine.statistics()

    stats = _run_with_engine(ctx, action)
    settings = ctx.obj['settings']

    if output_json:
        data = dict(vars(stats))
        data['configured'] = settings.is_configured()
        _print_json(data)
        return

    last_sync = stats.last_full_sync.isoformat() if stats.last_full_sync else "never"
    summary_text = (
        f"[cyan]Configured:[/cyan] {'yes' if settings.is_configured() else 'no'}\n"
        f"[cyan]Last full sync:[/cyan] {last_sync}\n"
        f"[cyan]Queued operations:[/cyan] {stats.queued_operations} pending, "
        f"{stats.failed_operations} failed"
    )
    if stats.last_batch:
        batch = stats.last_batch
        summary_text += (
            f"\n[cyan]Last batch:[/cyan] {batch.get('status')}, {batch.get('pulled', 0)} pulled, "
            f"{batch.get('uploaded', 0)} uploaded, {batch.get('failed', 0)} failed"
        )
    if stats.average_sync_duration_ms is not None:
        summary_text += f"\n[cyan]Average batch:[/cyan] {stats.average_sync_duration_ms:.0f} ms"
    console.print(Panel(summary_text, title="Sync Status", border_style="cyan"))

    table = Table(title=f"Mappings ({stats.total_mappings})")
    table.add_column("State", style="cyan")
    table.add_column("Count", justify="right")
    for state in SyncState:
        style = STATE_STYLES[state]
        table.add_row(f"[{style}]{state.display_name}[/{style}]", str(getattr(stats, state.value)))
    console.print(table)


@main.command("history")
@click.option("--limit", "-n", default=20, show_default=True, help="Number of entries")
@click.option("--entity", help="Only entries for this local entity id")
@click.option("--batch", help="Only entries of this batch id")
@click.option("--json", "output_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def history(ctx, limit, entity, batch, output_json):
    """Show the sync audit trail."""
    async def action(engine: SyncEngine):
        if entity:
            return engine.audit_log.history_for_entity(_parse_uuid(entity, "entity id"))[-limit:]
        if batch:
            return engine.audit_log.query_batch(_parse_uuid(batch, "batch id"))[-limit:]
        return engine.audit_log.recent(limit)

    entries = _run_with_engine(ctx, action)
    if output_json:
        _print_json([entry.to_dict() for entry in entries])
        return
    if not entries:
        console.print("[yellow]No audit entries[/yellow]")
        return

    table = Table(title="Sync History")
    table.add_column("Time", style="dim")
    table.add_column("Operation", style="cyan")
    table.add_column("Outcome")
    table.add_column("Entity")
    table.add_column("Remote")
    table.add_column("Details")
    for entry in entries:
        style = STATE_STYLES[entry.outcome]
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.operation.display_name,
            f"[{style}]{entry.outcome.display_name}[/{style}]",
            str(entry.entity_id)[:8] if entry.entity_id else "-",
            entry.remote_object_id or "-",
            entry.error_message or entry.details or "",
        )
    console.print(table)


@main.command("queue")
@click.option("--failed", "only_failed", is_flag=True, help="Only terminally failed operations")
@click.option("--limit", "-n", default=50, show_default=True)
@click.option("--json", "output_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def queue(ctx, only_failed, limit, output_json):
    """List queued operations."""
    async def action(engine: SyncEngine):
        status_filter = OperationStatus.FAILED if only_failed else None
        return engine.queue.list_operations(status_filter, limit=limit)

    operations = _run_with_engine(ctx, action)
    if output_json:
        _print_json([op.to_dict() for op in operations])
        return
    if not operations:
        console.print("[green]Queue is empty[/green]")
        return

    table = Table(title="Operation Queue")
    table.add_column("#", justify="right")
    table.add_column("Id", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Entity")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Next retry")
    table.add_column("Last error")
    for op in operations:
        table.add_row(
            str(op.sequence),
            str(op.id),
            op.op_type.value,
            str(op.local_id)[:8] if op.local_id else "-",
            op.status.value,
            str(op.attempt_count),
            op.next_retry_at.strftime("%H:%M:%S") if op.next_retry_at else "-",
            op.last_error or "",
        )
    console.print(table)


@main.command("run")
@click.option("--kind", "kinds", multiple=True, type=click.Choice([k.value for k in EntityKind]),
              help="Entity kinds to sync (default: all configured)")
@click.option("--watch", is_flag=True, help="Keep running on the configured interval")
@click.option("--json", "output_json", is_flag=True, help="Print the batch result as JSON")
@click.pass_context
def run(ctx, kinds, watch, output_json):
    """Run a sync batch now."""
    entity_kinds = [EntityKind(k) for k in kinds] or None

    async def action(engine: SyncEngine):
        if watch:
            scheduler = SyncScheduler(engine)
            console.print(f"[cyan]Syncing every {scheduler.interval}s, Ctrl+C to stop[/cyan]")
            scheduler.start()
            try:
                while scheduler.is_running:
                    await asyncio.sleep(1)
            finally:
                await scheduler.stop()
            return None
        return await engine.run_batch(entity_kinds)

    try:
        result = _run_with_engine(ctx, action)
    except KeyboardInterrupt:
        console.print("\n[yellow]Sync cancelled by user[/yellow]")
        return
    if result is None:
        return
    if output_json:
        _print_json(result.to_dict())
        return

    style = "green" if not result.failed else "yellow"
    console.print(Panel(
        f"[cyan]Pulled:[/cyan] {result.pulled}  [cyan]Created:[/cyan] {result.created}  "
        f"[cyan]Linked:[/cyan] {result.linked}  "
        f"[cyan]Updated:[/cyan] {result.updated}  [cyan]Deleted:[/cyan] {result.deleted}\n"
        f"[cyan]Uploaded:[/cyan] {result.uploaded}  [cyan]Conflicts:[/cyan] {result.conflicts}  "
        f"[cyan]Failed:[/cyan] {result.failed}  [cyan]Skipped:[/cyan] {result.skipped}\n"
        f"[cyan]Duration:[/cyan] {result.duration_seconds:.1f}s",
        title=f"Batch {result.status.value}",
        border_style=style,
    ))
    for error in result.errors[:10]:
        console.print(f"  [red]•[/red] {error}")


@main.command("mappings")
@click.option("--state", type=click.Choice([s.value for s in SyncState]), default=SyncState.CONFLICT.value,
              show_default=True, help="Mapping state to list")
@click.option("--json", "output_json", is_flag=True, help="Output in JSON format")
@click.pass_context
def mappings(ctx, state, output_json):
    """List mappings in a state; conflicts show the fields that differ."""
    sync_state = SyncState(state)

    async def action(engine: SyncEngine):
        return await engine.mapping_details(sync_state)

    details = _run_with_engine(ctx, action)
    if output_json:
        _print_json([detail.to_dict() for detail in details])
        return
    if not details:
        console.print(f"[green]No {sync_state.display_name.lower()} mappings[/green]")
        return

    style = STATE_STYLES[sync_state]
    table = Table(title=f"{sync_state.display_name} Mappings ({len(details)})")
    table.add_column("Local id", style="dim")
    table.add_column("Remote id")
    table.add_column("Kind", style="cyan")
    table.add_column("State")
    table.add_column("Changed fields")
    table.add_column("Last error")
    for detail in details:
        mapping = detail.mapping
        table.add_row(
            str(mapping.local_id),
            mapping.remote_object_id,
            mapping.entity_kind.value,
            f"[{style}]{mapping.sync_state.display_name}[/{style}]",
            ", ".join(detail.changed_fields) or "-",
            mapping.last_error or "",
        )
    console.print(table)
    if sync_state is SyncState.CONFLICT:
        console.print("[dim]Settle with: storesync resolve LOCAL_ID --use local|remote|merge[/dim]")


@main.command("retry")
@click.argument("op_id")
@click.pass_context
def retry(ctx, op_id):
    """Requeue a terminally failed operation."""
    op_uuid = _parse_uuid(op_id, "operation id")

    async def action(engine: SyncEngine):
        return engine.retry_operation(op_uuid)

    op = _run_with_engine(ctx, action)
    console.print(f"[green]Requeued {op.op_type.value} #{op.sequence}[/green]")


@main.command("resolve")
@click.argument("local_id")
@click.option("--use", "choice", type=click.Choice(["local", "remote", "merge"]), required=True,
              help="Which side wins")
@click.option("--field", "fields", multiple=True, metavar="NAME=VALUE",
              help="Field values for a merge (JSON values accepted)")
@click.pass_context
def resolve(ctx, local_id, choice, fields):
    """Resolve a mapping that is in Conflict state."""
    local_uuid = _parse_uuid(local_id, "entity id")
    if choice == "local":
        resolution = Resolution.use_local("Chosen from command line")
    elif choice == "remote":
        resolution = Resolution.use_remote("Chosen from command line")
    else:
        resolution = Resolution.merge(_parse_fields(fields), "Chosen from command line")

    async def action(engine: SyncEngine):
        return await engine.resolve_conflict(local_uuid, resolution)

    mapping = _run_with_engine(ctx, action)
    console.print(f"[green]Resolved {mapping.local_id} -> {mapping.remote_object_id} (v{mapping.version})[/green]")


def _parse_fields(pairs) -> Dict[str, Any]:
    fields = {}
    for pair in pairs:
        name, sep, raw = pair.partition("=")
        if not sep or not name:
            raise click.BadParameter(f"Expected NAME=VALUE, got {pair!r}")
        try:
            fields[name] = json.loads(raw)
        except ValueError:
            fields[name] = raw
    return fields


@main.command("webhook")
@click.argument("payload_file", type=click.File("r"))
@click.option("--run", "run_now", is_flag=True, help="Run a batch after enqueueing")
@click.pass_context
def webhook(ctx, payload_file, run_now):
    """Enqueue the download for a verified webhook payload (JSON file or '-')."""
    try:
        payload = json.load(payload_file)
    except ValueError as e:
        raise click.BadParameter(f"Payload is not valid JSON: {e}")

    async def action(engine: SyncEngine):
        op = await engine.handle_webhook(payload)
        result = await engine.run_batch() if run_now else None
        return op, result

    op, result = _run_with_engine(ctx, action)
    console.print(f"[green]Enqueued {op.op_type.value} #{op.sequence}[/green]")
    if result is not None:
        console.print(f"Batch {result.status.value}: {result.pulled} pulled, {result.failed} failed")


@main.command("serve")
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8080, show_default=True, type=int)
@click.pass_context
def serve(ctx, host, port):
    """Receive signed webhooks over HTTP; pair with 'run --watch' to process them."""
    from .webhook_server import start_server

    settings = ctx.obj['settings']
    signature_key = settings.credentials.webhook_signature_key
    if not signature_key:
        raise click.UsageError("No webhook signature key configured; use 'configure --webhook-key'")

    console.print(f"[green]Listening for webhooks on http://{host}:{port}/webhook[/green]")
    start_server(build_engine(settings), signature_key, host=host, port=port)


@main.command("unlink")
@click.argument("local_id")
@click.pass_context
def unlink(ctx, local_id):
    """Disable the mapping of a local entity."""
    local_uuid = _parse_uuid(local_id, "entity id")

    async def action(engine: SyncEngine):
        return engine.unlink(local_uuid)

    mapping = _run_with_engine(ctx, action)
    console.print(f"[yellow]Unlinked {mapping.local_id} from {mapping.remote_object_id}[/yellow]")


@main.command("reset")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def reset(ctx, yes):
    """Forget all mappings, queued operations and cursors for a full resync."""
    if not yes and not Confirm.ask("Reset all sync state? Audit history is kept"):
        console.print("[dim]Cancelled[/dim]")
        return

    async def action(engine: SyncEngine):
        return engine.reset_sync_state()

    removed = _run_with_engine(ctx, action)
    console.print(
        f"[green]Reset complete:[/green] {removed.get('identity_mappings', 0)} mappings, "
        f"{removed.get('queued_operations', 0)} operations removed"
    )


if __name__ == "__main__":
    main()
