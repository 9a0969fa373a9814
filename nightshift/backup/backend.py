"""Narrow interfaces to the outside world used by the lifecycle manager.

The manager never touches tar or the filesystem directly, so its logic can be
driven by in-memory fakes in tests and by these implementations in production.
"""

# Stdlib imports
import contextlib
import datetime
import fcntl
import os
import pathlib
import shutil
import typing

# Vendor imports
import sh

# Local imports
from . import command, helper, model
from .errors import ArchiveError, LockHeldError

# tar uses exit code 1 for "file changed as we read it"; the archive is still complete
TAR_OK_CODES = (0, 1)


class ArchiveBackend(typing.Protocol):
    def create(
        self, sources: list[pathlib.Path], target: pathlib.Path
    ) -> typing.Optional[str]:
        """Write a gzip tar of `sources` to `target`, keeping absolute member names.

        Returns a warning message for a degraded-but-complete archive, or None.
        Raises ArchiveError on failure.
        """
        ...


class Filesystem(typing.Protocol):
    def exists(self, path: pathlib.Path) -> bool:
        ...

    def is_directory(self, path: pathlib.Path) -> bool:
        ...

    def make_directory(self, path: pathlib.Path, mode: int) -> None:
        ...

    def is_writable(self, path: pathlib.Path) -> bool:
        ...

    def list_entries(self, directory: pathlib.Path) -> list[model.ArchiveEntry]:
        ...

    def remove(self, path: pathlib.Path, missing_ok: bool = False) -> None:
        ...

    def rename(self, source: pathlib.Path, target: pathlib.Path) -> None:
        ...

    def change_owner(
        self, path: pathlib.Path, user: str, group: typing.Optional[str]
    ) -> None:
        ...

    def change_mode(self, path: pathlib.Path, mode: int) -> None:
        ...

    def lock(self, path: pathlib.Path) -> typing.ContextManager[None]:
        ...


class TarArchiver:
    def __init__(self, nice: bool = True):
        self.nice = nice

    def create(
        self, sources: list[pathlib.Path], target: pathlib.Path
    ) -> typing.Optional[str]:
        if command.tar is None:
            raise ArchiveError(
                "Cannot find the 'tar' command. Ensure it is installed and available on PATH."
            )

        # -P keeps the leading "/" on member names so restores land on the original paths
        args = ["-c", "-z", "-P", "-f", str(target), "--", *map(str, sources)]
        helper.print_detail("tar", *args)

        try:
            proc = helper.run_command_politely(
                command.tar, args, okCodes=TAR_OK_CODES, nice=self.nice
            )
        except sh.ErrorReturnCode as err:
            stderr = err.stderr.decode(errors="replace").strip()
            raise ArchiveError(
                f"tar exited with code {err.exit_code}: {stderr}"
            ) from err

        if proc.exit_code != 0:
            stderr = proc.stderr.decode(errors="replace").strip()
            return f"tar reported changes while reading sources: {stderr}"
        return None


class LocalFilesystem:
    def exists(self, path: pathlib.Path) -> bool:
        return path.exists()

    def is_directory(self, path: pathlib.Path) -> bool:
        return path.is_dir()

    def make_directory(self, path: pathlib.Path, mode: int) -> None:
        path.mkdir(mode=mode, parents=True)
        # mkdir is subject to the umask, so set the mode explicitly
        os.chmod(path, mode)

    def is_writable(self, path: pathlib.Path) -> bool:
        return os.access(path, os.W_OK | os.X_OK)

    def list_entries(self, directory: pathlib.Path) -> list[model.ArchiveEntry]:
        entries = []
        with os.scandir(directory) as iterator:
            for dir_entry in iterator:
                try:
                    stat = dir_entry.stat(follow_symlinks=False)
                except FileNotFoundError:
                    # Removed between the directory read and the stat
                    continue
                entries.append(
                    model.ArchiveEntry(
                        path=pathlib.Path(dir_entry.path),
                        modified=datetime.datetime.fromtimestamp(
                            stat.st_mtime, tz=datetime.timezone.utc
                        ),
                        size=stat.st_size,
                        is_file=dir_entry.is_file(follow_symlinks=False),
                    )
                )
        return entries

    def remove(self, path: pathlib.Path, missing_ok: bool = False) -> None:
        path.unlink(missing_ok=missing_ok)

    def rename(self, source: pathlib.Path, target: pathlib.Path) -> None:
        source.rename(target)

    def change_owner(
        self, path: pathlib.Path, user: str, group: typing.Optional[str]
    ) -> None:
        shutil.chown(path, user, group)

    def change_mode(self, path: pathlib.Path, mode: int) -> None:
        os.chmod(path, mode)

    @contextlib.contextmanager
    def lock(self, path: pathlib.Path) -> typing.Iterator[None]:
        # The lock file itself is left in place; removing it would let a
        # waiting run lock a different inode than the holder
        with path.open("a") as handle:
            try:
                fcntl.flock(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)
            except BlockingIOError as err:
                raise LockHeldError(
                    f"Another backup run holds the lock '{path}'"
                ) from err
            try:
                yield
            finally:
                fcntl.flock(handle, fcntl.LOCK_UN)
