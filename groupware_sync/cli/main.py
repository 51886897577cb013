"""
Command-line interface for groupware_sync.

Provides maintenance commands for the synchronization metadata database and
the configuration file.

Usage:
    # Show help
    groupware-sync --help

    # Create the metadata database
    groupware-sync init-db

    # Show metadata counts and watermarks
    groupware-sync status

    # Validate the configuration file
    groupware-sync check-config

    # Force a full window on the next pass of one store
    groupware-sync reset --store exchange-appointment
"""

import sys
from pathlib import Path
from typing import Any, Optional

import click

from groupware_sync import __version__
from groupware_sync.config.loader import DEFAULT_CONFIG_FILE, ConfigError, ConfigLoader
from groupware_sync.config.settings import SettingsError, SyncSettings
from groupware_sync.storage.db import SyncDatabase
from groupware_sync.utils import resolve_config_dir
from groupware_sync.utils.logging import cleanup_old_logs, get_logger, setup_logging
from groupware_sync.utils.paths import resolve_database_path


def get_config_dir(config_dir: Optional[str]) -> Path:
    """Get the configuration directory path."""
    return resolve_config_dir(config_dir)


def get_config_file(config_dir: Path, config_file: Optional[str]) -> Path:
    """Get the configuration file path."""
    if config_file:
        return Path(config_file)
    return config_dir / DEFAULT_CONFIG_FILE


def open_database(ctx: click.Context) -> SyncDatabase:
    """Open (and create if needed) the metadata database of the context."""
    db = SyncDatabase(str(ctx.obj["database_path"]))
    db.initialize()
    return db


@click.group()
@click.version_option(version=__version__, prog_name="groupware-sync")
@click.option(
    "--verbose", "-v", is_flag=True, help="Enable verbose output with detailed logging."
)
@click.option(
    "--quiet", "-q", is_flag=True, help="Only show warnings and errors on the console."
)
@click.option(
    "--config-dir",
    "-c",
    type=click.Path(exists=False, file_okay=False, dir_okay=True),
    envvar="GROUPWARE_SYNC_CONFIG_DIR",
    help="Configuration directory path (default: ~/.groupware-sync).",
)
@click.option(
    "--config-file",
    "-f",
    type=click.Path(exists=False, file_okay=True, dir_okay=False),
    envvar="GROUPWARE_SYNC_CONFIG_FILE",
    help="Configuration file path (default: <config-dir>/config.yaml).",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    config_dir: Optional[str],
    config_file: Optional[str],
) -> None:
    """
    CRM and groupware synchronization.

    Keeps calendar, contact and mail records of a CRM database consistent
    with a groupware mailbox.
    """
    ctx.ensure_object(dict)

    resolved_config_dir = get_config_dir(config_dir)
    resolved_config_file = get_config_file(resolved_config_dir, config_file)
    ctx.obj["config_dir"] = resolved_config_dir
    ctx.obj["config_file"] = resolved_config_file

    config: dict[str, Any] = {}
    try:
        loader = ConfigLoader(config_dir=resolved_config_dir)
        config = loader.load_from_file(resolved_config_file)
        if config:
            loader.validate(config)
    except ConfigError as e:
        # Show error but don't fail - commands work without a config file
        click.echo(
            click.style(f"Warning: Configuration error: {e}", fg="yellow"), err=True
        )
        config = {}

    ctx.obj["config"] = config
    ctx.obj["database_path"] = resolve_database_path(
        resolved_config_dir, config.get("database_path")
    )

    effective_verbose = verbose or config.get("verbose", False)
    ctx.obj["verbose"] = effective_verbose

    log_dir = Path(config["log_dir"]) if config.get("log_dir") else None
    setup_logging(
        verbose=effective_verbose,
        quiet=quiet,
        log_dir=log_dir,
        enable_file_logging=log_dir is not None,
    )

    log_retention = config.get("log_retention_count", 10)
    if log_dir is not None and log_retention > 0:
        cleanup_old_logs(log_dir=log_dir, keep_count=log_retention)


# =============================================================================
# Init-DB Command
# =============================================================================


@cli.command("init-db")
@click.pass_context
def init_db_command(ctx: click.Context) -> None:
    """
    Create the metadata database.

    Example:

        groupware-sync init-db
    """
    logger = get_logger(__name__)
    db_path: Path = ctx.obj["database_path"]

    try:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        open_database(ctx)
        click.echo(click.style(f"Metadata database ready: {db_path}", fg="green"))
        logger.info(f"Initialized metadata database at {db_path}")
    except Exception as e:
        logger.exception(f"Database initialization failed: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


# =============================================================================
# Status Command
# =============================================================================


@cli.command("status")
@click.pass_context
def status_command(ctx: click.Context) -> None:
    """
    Show metadata and watermark status.

    Displays the number of linked records per remote store, the last
    committed sync of every (store, user) pair, held locks and recorded
    session errors.

    Example:

        groupware-sync status
    """
    logger = get_logger(__name__)
    db_path: Path = ctx.obj["database_path"]

    click.echo("=== Groupware Sync Status ===\n")
    click.echo(f"Configuration directory: {ctx.obj['config_dir']}")
    config_file: Path = ctx.obj["config_file"]
    click.echo(
        f"Configuration file: {config_file}"
        + ("" if config_file.exists() else click.style(" (not found)", fg="yellow"))
    )
    mailbox = ctx.obj["config"].get("mailbox")
    if mailbox:
        click.echo(f"Mailbox: {mailbox}")
    click.echo()

    if not db_path.exists():
        click.echo("Sync database: Not initialized (no syncs performed yet)")
        return

    try:
        db = open_database(ctx)
        stats = db.get_stats()

        click.echo("=== Metadata ===\n")
        if not stats["metadata"]:
            click.echo("No linked records")
        for store_id, counts in sorted(stats["metadata"].items()):
            click.echo(
                f"{store_id}: {counts['live']} linked, {counts['deleted']} deleted"
            )
        click.echo()

        click.echo("=== Watermarks ===\n")
        states = db.list_sync_states()
        if not states:
            click.echo("Never synced")
        for state in states:
            click.echo(
                f"{state['remote_store_id']} ({state['owning_user_id']}): "
                f"Last sync: {state['last_sync_at'] or 'Never'}"
            )
        click.echo()

        click.echo(f"Held locks: {stats['locks']}")
        if stats["session_errors"]:
            click.echo(
                click.style(f"Session errors: {stats['session_errors']}", fg="yellow")
            )
        else:
            click.echo("Session errors: 0")

    except Exception as e:
        logger.exception(f"Status check failed: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


# =============================================================================
# Reset Command
# =============================================================================


@cli.command("reset")
@click.option("--store", "-s", help="Remote store to reset (all stores if omitted).")
@click.option("--user", "-u", help="Owning user to reset (all users if omitted).")
@click.option("--yes", "-y", is_flag=True, help="Skip confirmation prompt.")
@click.pass_context
def reset_command(
    ctx: click.Context, store: Optional[str], user: Optional[str], yes: bool
) -> None:
    """
    Reset sync watermarks and session errors.

    The next pass enumerates the whole sync window again. Metadata links are
    kept, so nothing is duplicated and nothing is deleted on either side.

    Example:

        groupware-sync reset --store exchange-contact
    """
    logger = get_logger(__name__)
    db_path: Path = ctx.obj["database_path"]

    if not db_path.exists():
        click.echo("No sync database found. Nothing to reset.")
        return

    if not yes:
        click.confirm(
            "This will clear sync watermarks and force a full window on next run.\n"
            "Continue?",
            abort=True,
        )

    try:
        db = open_database(ctx)
        cleared = db.clear_last_sync(store, user)
        errors = db.clear_sync_error()
        click.echo(click.style("Sync state has been reset.", fg="green"))
        click.echo(f"Watermarks cleared: {cleared}, session errors cleared: {errors}")
        logger.info(f"Sync state reset (store={store}, user={user})")
    except Exception as e:
        logger.exception(f"Reset failed: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


# =============================================================================
# Release-Locks Command
# =============================================================================


@cli.command("release-locks")
@click.option("--owner", "-o", help="Release only the locks of one session id.")
@click.pass_context
def release_locks_command(ctx: click.Context, owner: Optional[str]) -> None:
    """
    Release aggregate locks left behind by interrupted sessions.

    Example:

        groupware-sync release-locks
    """
    logger = get_logger(__name__)
    db_path: Path = ctx.obj["database_path"]

    if not db_path.exists():
        click.echo("No sync database found. Nothing to release.")
        return

    try:
        db = open_database(ctx)
        released = db.release_locks(owner)
        click.echo(click.style(f"Released {released} locks.", fg="green"))
        logger.info(f"Released {released} locks (owner={owner})")
    except Exception as e:
        logger.exception(f"Releasing locks failed: {e}")
        click.echo(click.style(f"Error: {e}", fg="red"), err=True)
        sys.exit(1)


# =============================================================================
# Check-Config Command
# =============================================================================


@cli.command("check-config")
@click.pass_context
def check_config_command(ctx: click.Context) -> None:
    """
    Validate the configuration file and print the effective settings.

    Example:

        groupware-sync check-config
    """
    config_file: Path = ctx.obj["config_file"]

    if not config_file.exists():
        click.echo(f"Configuration file not found: {config_file}")
        click.echo("Default settings apply.")

    try:
        loader = ConfigLoader(config_dir=ctx.obj["config_dir"])
        config = loader.load_from_file(config_file)
        loader.validate(config)
        settings = SyncSettings.from_dict(config.get("sync"))
    except (ConfigError, SettingsError) as e:
        click.echo(click.style(f"Invalid configuration: {e}", fg="red"), err=True)
        sys.exit(1)

    click.echo("=== Effective sync settings ===\n")
    for key, value in settings.to_dict().items():
        click.echo(f"  {key}: {value}")
    click.echo()
    click.echo(click.style("Configuration is valid.", fg="green"))
