"""
Command-line interface for cherishly_sync.

Provides CLI commands for pairing with the peer application, reviewing the
people mapping, and triggering syncs.

Usage:
    # Show help
    cherishly-sync --help

    # Pair with the peer
    cherishly-sync pair generate
    cherishly-sync pair accept ABC234 --remote-url https://temerio.example

    # Review and activate the people mapping
    cherishly-sync mapping show
    cherishly-sync mapping activate --dry-run

    # Sync
    cherishly-sync backfill
    cherishly-sync run
"""

import sys
from datetime import timedelta
from pathlib import Path
from typing import Optional

import click

from cherishly_sync import __version__
from cherishly_sync.api.peer_client import PeerAPIError, PeerClient, client_for_connection
from cherishly_sync.cli.formatters import (
    show_actions,
    show_conflicts,
    show_mapping,
    show_notices,
    show_people,
    show_run_result,
)
from cherishly_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from cherishly_sync.config.settings import SyncSettings
from cherishly_sync.storage.db import SyncDatabase
from cherishly_sync.sync.actions import MappingActionHandler
from cherishly_sync.sync.activator import MappingActivator, plan_actions
from cherishly_sync.sync.errors import SyncError
from cherishly_sync.sync.handshake import PairingService, describe_code
from cherishly_sync.sync.inbox import (
    RESOLUTIONS,
    list_conflicts,
    resolve_conflict,
    suggest_local_people,
)
from cherishly_sync.sync.mapping import (
    MappingTarget,
    link_local_to,
    load_mapping_state,
    set_local_action,
    set_remote_action,
)
from cherishly_sync.sync.merge import merge_people, undo_merge
from cherishly_sync.sync.models import ConnectionStatus, EntityType, LocalPerson
from cherishly_sync.sync.remote_people import RemotePeopleCache
from cherishly_sync.sync.triggers import SyncTriggers
from cherishly_sync.utils import resolve_config_dir
from cherishly_sync.utils.logging import (
    cleanup_old_logs,
    get_logger,
    setup_logging,
    setup_matching_logger,
)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 8000


def get_config_dir(config_dir: str | None) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: str | None) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / DEFAULT_CONFIG_FILE


def _error(message: str) -> None:
    click.echo(click.style(f"Error: {message}", fg="red"), err=True)
    sys.exit(1)


def _settings(ctx: click.Context) -> SyncSettings:
    return SyncSettings.from_dict(ctx.obj["config"], ctx.obj["config_dir"])


def _open_database(settings: SyncSettings) -> SyncDatabase:
    settings.db_path.parent.mkdir(parents=True, exist_ok=True)
    db = SyncDatabase(str(settings.db_path))
    db.initialize()
    return db


def _require_user(settings: SyncSettings) -> str:
    if not settings.user_id:
        _error("No user_id configured. Add 'user_id: <id>' to config.yaml.")
    return settings.user_id or ""


def _resolve_connection(db: SyncDatabase, user_id: str, connection_id: Optional[str]) -> str:
    """Pick the given connection, or the user's only active one."""
    if connection_id:
        return connection_id
    active = db.list_connections(user_id=user_id, status=ConnectionStatus.ACTIVE.value)
    if not active:
        _error("No active connection. Pair first with 'cherishly-sync pair'.")
    if len(active) > 1:
        _error("Several active connections; choose one with --connection.")
    return str(active[0]["id"])


def _peer_factory(settings: SyncSettings):
    return lambda connection: client_for_connection(connection, settings)


connection_option = click.option(
    "--connection",
    "-C",
    "connection_id",
    default=None,
    help="Connection id (default: the only active connection).",
)


@click.group()
@click.version_option(version=__version__, prog_name="cherishly-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="CHERISHLY_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.cherishly-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="CHERISHLY_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    config_dir: str | None,
    config_file: str | None,
) -> None:
    """
    Cherishly/Temerio People Sync.

    Pairs this account with its peer application, maps people between the
    two, and keeps people and moments in sync.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Show error but don't fail - allow CLI to work without config file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    effective_verbose = verbose or config.get("verbose", False)
    config["verbose"] = effective_verbose
    ctx.obj["config"] = config
    ctx.obj["verbose"] = effective_verbose

    log_dir = Path(config["log_dir"]) if config.get("log_dir") else None
    setup_logging(verbose=effective_verbose, log_dir=log_dir, enable_file_logging=True)

    log_retention = config.get("log_retention_count", 10)
    if log_retention > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=log_retention)


# =============================================================================
# Status Command
# =============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show connections and sync status.

    Example:

        cherishly-sync status
    """
    logger = get_logger(__name__)
    settings = _settings(ctx)

    try:
        click.echo("=== Cherishly Sync Status ===\n")
        click.echo(f"Configuration directory: {ctx.obj['config_dir']}")
        click.echo(f"User: {settings.user_id or click.style('Not configured', fg='red')}")

        if not settings.db_path.exists():
            click.echo("Sync database: Not initialized (no pairing yet)")
            return

        db = _open_database(settings)
        connections = db.list_connections(user_id=settings.user_id)
        click.echo(f"Sync database: {settings.db_path}\n")

        if not connections:
            click.echo(click.style("No connections.", fg="yellow"))
            click.echo("Run 'cherishly-sync pair generate' to pair with the peer.")
            return

        for row in connections:
            active = row["status"] == ConnectionStatus.ACTIVE.value
            status = click.style(
                row["status"], fg="green" if active else "red"
            )
            click.echo(f"{row['remote_app']} [{row['id']}]: {status}")
            if not active:
                continue
            cursor = db.get_cursor(row["id"])
            open_conflicts = len(db.list_conflicts(row["id"], unresolved_only=True))
            click.echo(f"  Pending outbox: {db.count_pending_outbox(row['id'])}")
            click.echo(f"  Last pulled event: {cursor['last_pulled_outbox_id']}")
            click.echo(f"  Open conflicts: {open_conflicts}")

    except Exception as e:
        logger.exception(f"Error getting status: {e}")
        _error(str(e))


# =============================================================================
# Pairing Commands
# =============================================================================


@cli.group("pair")
def pair_group() -> None:
    """Pair this account with the peer application."""


@pair_group.command("generate")
@click.pass_context
def pair_generate_command(ctx: click.Context) -> None:
    """
    Generate a one-time pairing code to enter on the peer.

    Example:

        cherishly-sync pair generate
    """
    settings = _settings(ctx)
    user_id = _require_user(settings)

    db = _open_database(settings)
    service = PairingService(
        db, code_ttl=timedelta(minutes=settings.pairing_code_ttl_minutes)
    )
    try:
        code = service.generate_code(user_id)
    except SyncError as e:
        _error(str(e))
        return
    click.echo(f"Pairing code: {click.style(describe_code(code), fg='green', bold=True)}")
    click.echo(f"Enter it in {settings.remote_app} to connect the accounts.")


@pair_group.command("accept")
@click.argument("code")
@click.option("--remote-url", default=None, help="Base URL of the peer's sync API.")
@click.pass_context
def pair_accept_command(ctx: click.Context, code: str, remote_url: Optional[str]) -> None:
    """
    Redeem a pairing code shown by the peer.

    Example:

        cherishly-sync pair accept ABC234 --remote-url https://temerio.example
    """
    logger = get_logger(__name__)
    settings = _settings(ctx)
    user_id = _require_user(settings)
    base_url = remote_url or settings.remote_base_url
    if not base_url:
        _error("No peer URL. Pass --remote-url or set remote_base_url in config.yaml.")

    db = _open_database(settings)
    peer = PeerClient(
        base_url or "",
        timeout=settings.api_timeout,
        max_retries=settings.api_max_retries,
        initial_retry_delay=settings.api_initial_retry_delay,
        max_retry_delay=settings.api_max_retry_delay,
    )
    try:
        connection = PairingService(db).pair_with_peer(
            code,
            user_id=user_id,
            peer=peer,
            local_app=settings.local_app,
            remote_app=settings.remote_app,
            local_base_url=settings.local_base_url,
        )
    except (SyncError, PeerAPIError) as e:
        logger.error(f"Pairing failed: {e}")
        _error(str(e))
        return

    click.echo(click.style(f"Connected to {settings.remote_app}!", fg="green"))
    click.echo(f"Connection id: {connection.id}")


@cli.command("revoke")
@click.argument("connection_id")
@click.option("--no-notify", is_flag=True, help="Do not tell the peer.")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def revoke_command(ctx: click.Context, connection_id: str, no_notify: bool, yes: bool) -> None:
    """
    Revoke a connection. Syncing again needs a new pairing code.

    Example:

        cherishly-sync revoke 5f0c...
    """
    settings = _settings(ctx)
    if not yes:
        click.confirm(f"Revoke connection {connection_id}?", abort=True)

    db = _open_database(settings)
    try:
        connection = PairingService(db, peer_factory=_peer_factory(settings)).revoke(
            connection_id, notify_peer=not no_notify
        )
    except SyncError as e:
        _error(str(e))
        return
    click.echo(click.style(f"Connection {connection.id} revoked.", fg="green"))


# =============================================================================
# People and Mapping Commands
# =============================================================================


@cli.command("people")
@connection_option
@click.option("--refresh", is_flag=True, help="Fetch from the peer even if cached.")
@click.pass_context
def people_command(ctx: click.Context, connection_id: Optional[str], refresh: bool) -> None:
    """
    List the peer's people.

    Example:

        cherishly-sync people --refresh
    """
    settings = _settings(ctx)
    user_id = _require_user(settings)
    db = _open_database(settings)
    connection_id = _resolve_connection(db, user_id, connection_id)

    cache = RemotePeopleCache(
        db, _peer_factory(settings), ttl_seconds=settings.remote_people_cache_ttl
    )
    try:
        listing = cache.list(connection_id, force_refresh=refresh)
    except (SyncError, PeerAPIError) as e:
        _error(str(e))
        return
    show_people(listing)


@cli.group("mapping")
def mapping_group() -> None:
    """Review and activate the people mapping."""


@mapping_group.command("show")
@connection_option
@click.pass_context
def mapping_show_command(ctx: click.Context, connection_id: Optional[str]) -> None:
    """
    Show the current mapping, including suggested matches.

    Run 'cherishly-sync people --refresh' first to see the latest peer people.
    """
    settings = _settings(ctx)
    user_id = _require_user(settings)
    db = _open_database(settings)
    connection_id = _resolve_connection(db, user_id, connection_id)

    setup_matching_logger()
    state = load_mapping_state(db, connection_id, user_id)
    show_mapping(state)
    actions = plan_actions(state)
    if actions:
        show_actions(actions, state)
        click.echo("\nRun 'cherishly-sync mapping activate' to apply.")


def _split_link(value: str) -> tuple[str, str]:
    local_id, sep, remote_uid = value.partition(":")
    if not sep or not local_id or not remote_uid:
        raise click.BadParameter(f"Expected LOCAL_ID:REMOTE_UID, got {value!r}")
    return local_id, remote_uid


@mapping_group.command("activate")
@connection_option
@click.option("--link", "links", multiple=True, help="Link LOCAL_ID:REMOTE_UID.")
@click.option("--create-remote", multiple=True, help="Create LOCAL_ID on the peer.")
@click.option("--skip-local", multiple=True, help="Mark LOCAL_ID do-not-sync.")
@click.option("--exclude-remote", multiple=True, help="Mark REMOTE_UID do-not-sync.")
@click.option("--create-local", multiple=True, help="Create REMOTE_UID locally.")
@click.option("--dry-run", is_flag=True, help="Show what would change without applying.")
@click.pass_context
def mapping_activate_command(
    ctx: click.Context,
    connection_id: Optional[str],
    links: tuple[str, ...],
    create_remote: tuple[str, ...],
    skip_local: tuple[str, ...],
    exclude_remote: tuple[str, ...],
    create_local: tuple[str, ...],
    dry_run: bool,
) -> None:
    """
    Apply edits to the mapping and activate it.

    Without edits, activates the mapping as shown by 'mapping show'
    (suggested matches included).

    Examples:

        # Accept the suggestions
        cherishly-sync mapping activate

        # Override one match and skip a person
        cherishly-sync mapping activate --link p-1:t-9 --skip-local p-2
    """
    logger = get_logger(__name__)
    settings = _settings(ctx)
    user_id = _require_user(settings)
    db = _open_database(settings)
    connection_id = _resolve_connection(db, user_id, connection_id)

    def loader(conn_id: str):
        return load_mapping_state(db, conn_id, user_id)

    setup_matching_logger()
    state = loader(connection_id)
    try:
        for value in links:
            local_id, remote_uid = _split_link(value)
            update = link_local_to(state, local_id, remote_uid)
            show_notices(list(update.notices))
            state = update.state
        for local_id in create_remote:
            state = set_local_action(state, local_id, MappingTarget.CREATE_REMOTE).state
        for local_id in skip_local:
            state = set_local_action(state, local_id, MappingTarget.DO_NOT_SYNC).state
        for remote_uid in exclude_remote:
            update = set_remote_action(state, remote_uid, MappingTarget.DO_NOT_SYNC)
            show_notices(list(update.notices))
            state = update.state
        for remote_uid in create_local:
            update = set_remote_action(state, remote_uid, MappingTarget.CREATE_LOCAL)
            show_notices(list(update.notices))
            state = update.state
    except SyncError as e:
        _error(str(e))
        return

    actions = plan_actions(state)
    if dry_run:
        if actions:
            show_actions(actions, state)
        click.echo(click.style("\nDry run: no changes applied.", fg="yellow"))
        return

    handler = MappingActionHandler(db, _peer_factory(settings))
    try:
        result = MappingActivator(handler, loader).activate(state)
    except SyncError as e:
        logger.error(f"Activation failed: {e}")
        _error(str(e))
        return

    if result.failed:
        click.echo(click.style(result.message, fg="yellow"))
        for error in result.errors:
            click.echo(f"  {error}", err=True)
        sys.exit(1)
    click.echo(click.style(result.message, fg="green"))


# =============================================================================
# Conflict Commands
# =============================================================================


@cli.group("conflicts")
def conflicts_group() -> None:
    """Review conflicts logged during sync."""


@conflicts_group.command("list")
@connection_option
@click.option("--all", "show_all", is_flag=True, help="Include resolved conflicts.")
@click.pass_context
def conflicts_list_command(
    ctx: click.Context, connection_id: Optional[str], show_all: bool
) -> None:
    """List conflicts, with local people that may match unmapped remote ones."""
    settings = _settings(ctx)
    user_id = _require_user(settings)
    db = _open_database(settings)
    connection_id = _resolve_connection(db, user_id, connection_id)

    conflicts = list_conflicts(db, connection_id, unresolved_only=not show_all)
    show_conflicts(conflicts)

    people = [LocalPerson.from_row(r) for r in db.list_partners(user_id)]
    for conflict in conflicts:
        if conflict.is_resolved or conflict.entity_type != EntityType.PERSON.value:
            continue
        name = conflict.remote_payload.get("name", "")
        suggestions = suggest_local_people(name, people)
        if suggestions:
            picks = ", ".join(
                f"{s.person.name} [{s.person.id}] {s.score:.0%}" for s in suggestions
            )
            click.echo(f"  #{conflict.id} may be: {picks}")


@conflicts_group.command("resolve")
@click.argument("conflict_id", type=int)
@click.argument("resolution", type=click.Choice(RESOLUTIONS))
@click.pass_context
def conflicts_resolve_command(ctx: click.Context, conflict_id: int, resolution: str) -> None:
    """
    Mark a conflict resolved.

    Example:

        cherishly-sync conflicts resolve 12 dismiss
    """
    settings = _settings(ctx)
    db = _open_database(settings)
    try:
        resolve_conflict(db, conflict_id, resolution)
    except SyncError as e:
        _error(str(e))
        return
    click.echo(click.style(f"Conflict {conflict_id} resolved: {resolution}", fg="green"))


# =============================================================================
# Sync Commands
# =============================================================================


def _triggers(db: SyncDatabase, settings: SyncSettings) -> SyncTriggers:
    return SyncTriggers(
        db,
        _peer_factory(settings),
        push_batch_size=settings.push_batch_size,
        pull_batch_size=settings.pull_batch_size,
    )


@cli.command("backfill")
@connection_option
@click.pass_context
def backfill_command(ctx: click.Context, connection_id: Optional[str]) -> None:
    """Queue existing linked people and moments for the next run."""
    settings = _settings(ctx)
    user_id = _require_user(settings)
    db = _open_database(settings)
    connection_id = _resolve_connection(db, user_id, connection_id)

    try:
        result = _triggers(db, settings).backfill(connection_id)
    except SyncError as e:
        _error(str(e))
        return
    click.echo(click.style(result.message, fg="green"))
    if result.already_pending:
        click.echo(f"{result.already_pending} already pending.")


@cli.command("run")
@connection_option
@click.pass_context
def run_command(ctx: click.Context, connection_id: Optional[str]) -> None:
    """Push pending changes, then pull and apply the peer's changes."""
    logger = get_logger(__name__)
    settings = _settings(ctx)
    user_id = _require_user(settings)
    db = _open_database(settings)
    connection_id = _resolve_connection(db, user_id, connection_id)

    try:
        result = _triggers(db, settings).run(connection_id)
    except (SyncError, PeerAPIError) as e:
        logger.error(f"Sync failed: {e}")
        _error(str(e))
        return
    show_run_result(result)


# =============================================================================
# Merge Commands
# =============================================================================


@cli.command("merge")
@click.argument("keep_id")
@click.argument("merge_id")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def merge_command(ctx: click.Context, keep_id: str, merge_id: str, yes: bool) -> None:
    """
    Merge a duplicate local person into another.

    Example:

        cherishly-sync merge p-keep p-duplicate
    """
    settings = _settings(ctx)
    db = _open_database(settings)
    if not yes:
        click.confirm(f"Merge {merge_id} into {keep_id}?", abort=True)

    try:
        result = merge_people(db, keep_id, merge_id)
    except SyncError as e:
        _error(str(e))
        return
    click.echo(
        click.style(
            f"Merged (log #{result.log_id}): {result.moments_updated} moment(s), "
            f"{result.links_moved} link(s) moved, {result.links_dropped} dropped",
            fg="green",
        )
    )
    click.echo(f"Undo with 'cherishly-sync merge-undo {result.log_id}'.")


@cli.command("merge-log")
@click.pass_context
def merge_log_command(ctx: click.Context) -> None:
    """List merges that can still be undone."""
    settings = _settings(ctx)
    user_id = _require_user(settings)
    db = _open_database(settings)

    entries = db.list_merge_logs(user_id)
    if not entries:
        click.echo("No merges to undo.")
        return
    for entry in entries:
        click.echo(
            f"  #{entry['id']} {entry['merged_person_id']} -> "
            f"{entry['kept_person_id']} ({entry['created_at']})"
        )


@cli.command("merge-undo")
@click.argument("log_id", type=int)
@click.pass_context
def merge_undo_command(ctx: click.Context, log_id: int) -> None:
    """Undo a merge by its log id."""
    settings = _settings(ctx)
    db = _open_database(settings)
    try:
        entry = undo_merge(db, log_id)
    except SyncError as e:
        _error(str(e))
        return
    click.echo(
        click.style(f"Restored {entry['merged_person_id']} from merge #{log_id}", fg="green")
    )


# =============================================================================
# Server Command
# =============================================================================


@cli.command("serve")
@click.option("--host", default=DEFAULT_HOST, show_default=True, help="Bind address.")
@click.option("--port", default=DEFAULT_PORT, show_default=True, type=int, help="Bind port.")
@click.pass_context
def serve_command(ctx: click.Context, host: str, port: int) -> None:
    """Serve the peer sync endpoints."""
    import uvicorn

    from cherishly_sync.server.app import create_app

    settings = _settings(ctx)
    db = _open_database(settings)
    app = create_app(db, peer_factory=_peer_factory(settings))
    click.echo(f"Serving sync endpoints on http://{host}:{port}")
    uvicorn.run(app, host=host, port=port)
