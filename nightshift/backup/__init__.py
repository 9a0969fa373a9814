# Stdlib imports
import contextlib
import pathlib
import signal
import sys

# Vendor imports
import typer

# Local imports
from . import helper, config as applicationConfig, model
from .errors import LockHeldError
from .manager import ArchiveLifecycleManager


# Create a subclass of the context with correct typing of the backup config object
class BackupCLIContext(typer.Context):
    obj: model.BackupConfiguration
    verbose: bool


# Initialize the typer app
cli = typer.Typer()


# Main method that initializes the configuration and makes it available to all commands
@cli.callback()
def cli_main(
    ctx: BackupCLIContext,
    config: pathlib.Path = typer.Option(
        applicationConfig.default_config_path,
        "--config",
        "-c",
        envvar="NIGHTSHIFT_BACKUP_CONFIG",
        help="Path to backup configuration file.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose/",
        "-v/",
        envvar="NIGHTSHIFT_BACKUP_VERBOSE",
        help="Print verbose information when executing commands.",
    ),
):
    # Load the config options and insert it into the context object
    try:
        ctx.obj = applicationConfig.load_config_values(config)
    except (applicationConfig.ConfigError, OSError) as err:
        helper.print_error(f"Error: {err}")
    ctx.verbose = verbose
    helper.verbose = verbose


def _terminate(signum, frame):
    # Raised inside the running command's wait so tar gets killed and cleaned up
    raise SystemExit(128 + signum)


@cli.command(
    name="run",
    help="Create a new archive of all configured sources, then delete archives older than the retention window.",
)
def cli_run(ctx: BackupCLIContext):
    config = ctx.obj

    previous_handler = signal.signal(signal.SIGTERM, _terminate)
    try:
        manager = ArchiveLifecycleManager(config, log_to_file=True)
        result = manager.run()
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    if result.state.failed:
        helper.print(
            f"-------- [red]Backup failed ({result.state.value}):[/] {result.error}",
            file=sys.stderr,
        )
    elif result.warnings:
        helper.print_line(
            f"[yellow]Backup finished with {len(result.warnings)} warning(s)"
        )

    raise typer.Exit(result.exit_code)


@cli.command(
    name="sweep",
    help="Delete archives older than the retention window without creating a new one.",
)
def cli_sweep(
    ctx: BackupCLIContext,
    dry_run: bool = typer.Option(
        False,
        "--dry-run/",
        "-n/",
        help="Make no changes, only list the archives that would be deleted.",
    ),
):
    config = ctx.obj
    manager = ArchiveLifecycleManager(config)

    if not config.destination_path.is_dir():
        helper.print_error(
            f"Error: Backup directory '{config.destination_path}' does not exist"
        )

    helper.print_line(
        f"Removing archives older than {helper.human_age(manager.retention)} from {config.destination_path}"
    )
    # A dry run changes nothing, so only a real sweep waits its turn behind a run
    lock = contextlib.nullcontext() if dry_run else manager.destination_lock()
    try:
        with lock:
            result = manager.sweep(dry_run=dry_run)
    except (LockHeldError, OSError) as err:
        helper.print_error(f"Error: {err}")

    verb = "would be removed" if dry_run else "removed"
    helper.print_line(
        f"{len(result.deleted)} archive(s) {verb}, {len(result.kept)} kept"
    )
    if not result.ok:
        raise typer.Exit(1)


@cli.command(
    name="list",
    help="List the archives in the backup directory with their age and size.",
)
def cli_list(ctx: BackupCLIContext):
    config = ctx.obj
    manager = ArchiveLifecycleManager(config)

    if not config.destination_path.is_dir():
        helper.print_error(
            f"Error: Backup directory '{config.destination_path}' does not exist"
        )

    now = helper.utc_now()
    archives = manager.list_archives()
    helper.print(f"Archives in {config.destination_path}:")
    for entry in archives:
        expired = (
            " [red](expired)" if now - entry.modified > manager.retention else ""
        )
        helper.print(
            f"  - {entry.path.name}  {helper.human_age(now - entry.modified)} old, {helper.human_readable(entry.size)}{expired}"
        )

    if not archives:
        helper.print("  (none)")


@cli.command(
    name="config",
    help="Print the effective configuration, including defaults.",
)
def cli_config(ctx: BackupCLIContext):
    config = ctx.obj
    data = config.model_dump()
    data["directory_mode"] = f"{config.directory_mode:o}"
    data["archive_mode"] = f"{config.archive_mode:o}"
    data["log_file"] = str(config.log_file_path)
    data["group"] = config.owner_group
    helper.print_config_data(data)
