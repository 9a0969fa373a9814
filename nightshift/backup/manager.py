# Stdlib imports
import contextlib
import datetime
import pathlib
import re
import typing

# Local imports
from . import helper, model
from .backend import ArchiveBackend, Filesystem, LocalFilesystem, TarArchiver
from .errors import ArchiveError, DestinationError, LockHeldError, NothingToArchiveError


class ArchiveLifecycleManager:
    """Creates timestamped archives of the configured sources and expires old ones.

    A run walks through: destination check, source resolution, archive
    creation, ownership adjustment, and the retention sweep. Only a destination,
    lock or archive failure stops a run; everything after a successful archive
    is best-effort.
    """

    def __init__(
        self,
        config: model.BackupConfiguration,
        filesystem: typing.Optional[Filesystem] = None,
        archiver: typing.Optional[ArchiveBackend] = None,
        clock: typing.Callable[[], datetime.datetime] = helper.utc_now,
        log_to_file: bool = False,
    ):
        self.config = config
        self.filesystem = filesystem or LocalFilesystem()
        self.archiver = archiver or TarArchiver(nice=config.nice)
        self.clock = clock
        self.log_to_file = log_to_file
        self.retention = helper.parse_duration(config.retention)
        self.archive_pattern = re.compile(
            rf"^{re.escape(config.archive_prefix)}_\d{{8}}_\d{{6}}\.tar\.gz$"
        )
        self.warnings: list[str] = []

    def _warn(self, message: str):
        self.warnings.append(message)
        helper.print_warning(message)

    def archive_name(self, timestamp: str) -> str:
        return f"{self.config.archive_prefix}_{timestamp}.tar.gz"

    def ensure_destination(
        self,
        path: typing.Optional[pathlib.Path] = None,
        mode: typing.Optional[int] = None,
        owner: typing.Optional[str] = None,
    ) -> pathlib.Path:
        path = path or self.config.destination_path
        mode = self.config.directory_mode if mode is None else mode

        if not self.filesystem.exists(path):
            helper.print_line(f"Creating backup directory {path}")
            try:
                self.filesystem.make_directory(path, mode)
            except OSError as err:
                raise DestinationError(
                    f"Unable to create backup directory '{path}': {err}"
                ) from err

            if owner:
                self.apply_ownership(path, owner, self.config.owner_group, mode)

        elif not self.filesystem.is_directory(path):
            raise DestinationError(
                f"Backup destination '{path}' exists but is not a directory"
            )

        # Advisory only, the archive write is checked separately
        if not self.filesystem.is_writable(path):
            raise DestinationError(f"Backup directory '{path}' is not writable")

        return path

    def resolve_sources(
        self, candidates: typing.Optional[list[str]] = None
    ) -> model.SourceResolution:
        if candidates is None:
            candidates = self.config.sources

        resolution = model.SourceResolution()
        for candidate in candidates:
            path = pathlib.Path(candidate)
            if self.filesystem.exists(path):
                helper.print_detail(f"Including {path}")
                resolution.included.append(path)
            else:
                self._warn(f"Warning: Source '{path}' does not exist, skipping")
                resolution.missing.append(path)

        return resolution

    def create_archive(
        self,
        sources: list[pathlib.Path],
        destination: pathlib.Path,
        timestamp: str,
    ) -> pathlib.Path:
        if not sources:
            raise NothingToArchiveError("None of the configured sources exist")

        name = self.archive_name(timestamp)
        final_path = destination / name
        if self.filesystem.exists(final_path):
            raise ArchiveError(f"Archive already exists at '{final_path}'")

        # tar writes to a hidden partial file that is only renamed once complete
        partial_path = destination / f".{name}.partial"
        try:
            warning = self.archiver.create(sources, partial_path)
            if not self.filesystem.exists(partial_path):
                raise ArchiveError("Archiver finished without producing a file")
            self.filesystem.rename(partial_path, final_path)
        except OSError as err:
            self._discard_partial(partial_path)
            raise ArchiveError(f"Unable to write archive: {err}") from err
        except BaseException:
            self._discard_partial(partial_path)
            raise

        if warning:
            self._warn(f"Warning: {warning}")

        return final_path

    def _discard_partial(self, partial_path: pathlib.Path):
        try:
            self.filesystem.remove(partial_path, missing_ok=True)
        except OSError as err:
            self._warn(
                f"Warning: Unable to remove partial archive '{partial_path}': {err}"
            )

    def apply_ownership(
        self,
        path: pathlib.Path,
        owner: typing.Optional[str],
        group: typing.Optional[str],
        mode: int,
    ) -> model.OwnershipResult:
        errors = []

        if owner:
            try:
                self.filesystem.change_owner(path, owner, group)
            except (OSError, LookupError) as err:
                errors.append(f"chown {owner}:{group or owner} failed: {err}")

        try:
            self.filesystem.change_mode(path, mode)
        except OSError as err:
            errors.append(f"chmod {mode:o} failed: {err}")

        if errors:
            message = "; ".join(errors)
            self._warn(f"Warning: Unable to set ownership of '{path}': {message}")
            return model.OwnershipResult(path=path, ok=False, error=message)

        helper.print_detail(f"Set {owner or '-'}:{group or '-'} {mode:o} on {path}")
        return model.OwnershipResult(path=path)

    def list_archives(
        self, destination: typing.Optional[pathlib.Path] = None
    ) -> list[model.ArchiveEntry]:
        destination = destination or self.config.destination_path
        archives = [
            entry
            for entry in self.filesystem.list_entries(destination)
            if entry.is_file and self.archive_pattern.match(entry.path.name)
        ]
        archives.sort(key=lambda entry: entry.path.name)
        return archives

    def sweep(
        self,
        destination: typing.Optional[pathlib.Path] = None,
        retention: typing.Optional[datetime.timedelta] = None,
        now: typing.Optional[datetime.datetime] = None,
        dry_run: bool = False,
    ) -> model.SweepResult:
        destination = destination or self.config.destination_path
        retention = self.retention if retention is None else retention
        now = now or self.clock()

        result = model.SweepResult(dry_run=dry_run)
        try:
            archives = self.list_archives(destination)
        except OSError as err:
            self._warn(f"Warning: Unable to list '{destination}': {err}")
            result.failed.append(model.SweepFailure(path=destination, error=str(err)))
            return result

        for entry in archives:
            age = now - entry.modified
            if age <= retention:
                result.kept.append(entry.path)
                continue

            if dry_run:
                helper.print_nested_line(
                    f"Would delete {entry.path.name} ({helper.human_age(age)} old)"
                )
                result.deleted.append(entry.path)
                continue

            try:
                self.filesystem.remove(entry.path)
            except OSError as err:
                self._warn(f"Warning: Unable to delete '{entry.path}': {err}")
                result.failed.append(model.SweepFailure(path=entry.path, error=str(err)))
                continue

            helper.print_nested_line(
                f"Deleted {entry.path.name} ({helper.human_age(age)} old)"
            )
            result.deleted.append(entry.path)

        return result

    def destination_lock(
        self, destination: typing.Optional[pathlib.Path] = None
    ) -> typing.ContextManager[None]:
        if not self.config.lock:
            return contextlib.nullcontext()
        destination = destination or self.config.destination_path
        return self.filesystem.lock(destination / f".{self.config.archive_prefix}.lock")

    def _attach_log(self) -> bool:
        if not self.log_to_file:
            return False
        log_path = self.config.log_file_path
        if not self.filesystem.exists(log_path.parent):
            return False
        return helper.attach_log_file(log_path)

    def run(self) -> model.RunResult:
        # One timestamp labels the whole run, log lines and archive name alike
        now = self.clock()
        result = model.RunResult(timestamp=helper.make_timestamp(now))
        self.warnings = []

        log_attached = self._attach_log()
        try:
            self._run(result, now, log_attached)
        finally:
            result.warnings = list(self.warnings)
            if helper.log_attached():
                helper.detach_log_file()

        return result

    def _run(
        self, result: model.RunResult, now: datetime.datetime, log_attached: bool
    ):
        config = self.config

        try:
            destination = self.ensure_destination(owner=config.owner)
        except DestinationError as err:
            result.state = model.RunState.DESTINATION_FAILED
            result.error = str(err)
            helper.print_line(f"[red]Error: {err}")
            return
        result.state = model.RunState.DESTINATION_READY

        if not log_attached:
            self._attach_log()
        helper.print_line(f"Starting backup run {result.timestamp}")

        with contextlib.ExitStack() as stack:
            try:
                stack.enter_context(self.destination_lock(destination))
            except (LockHeldError, OSError) as err:
                result.state = model.RunState.LOCK_HELD
                result.error = str(err)
                helper.print_line(f"[red]Error: {err}")
                return

            result.sources = self.resolve_sources()
            result.state = model.RunState.SOURCES_RESOLVED
            helper.print_line(
                f"Backing up {len(result.sources.included)} of {len(config.sources)} sources"
            )

            helper.print_line("Creating archive...")
            try:
                archive = self.create_archive(
                    result.sources.included, destination, result.timestamp
                )
            except ArchiveError as err:
                result.state = model.RunState.ARCHIVE_FAILED
                result.error = str(err)
                helper.print_line(f"[red]Error: {err}")
                return
            result.archive = archive
            result.state = model.RunState.ARCHIVED
            helper.print_line(f"[green]Archive created[/] at {archive}")

            # Ownership problems never fail the run, the archive is already valid
            result.ownership = [
                self.apply_ownership(
                    archive, config.owner, config.owner_group, config.archive_mode
                ),
                self.apply_ownership(
                    destination, config.owner, config.owner_group, config.directory_mode
                ),
            ]
            result.state = model.RunState.PERMISSIONS_APPLIED

            helper.print_line(
                f"Removing archives older than {helper.human_age(self.retention)}"
            )
            result.sweep = self.sweep(destination, now=now)
            result.state = model.RunState.SWEPT_COMPLETE

            helper.print_line(
                f"Finished: {len(result.sweep.deleted)} old archive(s) removed"
            )
