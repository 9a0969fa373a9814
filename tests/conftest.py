import contextlib
import datetime
import os
import pathlib
import time
import typing
from dataclasses import dataclass, field

import pytest

from nightshift.backup import helper
from nightshift.backup.errors import LockHeldError
from nightshift.backup.model import ArchiveEntry, BackupConfiguration

NOW = datetime.datetime(2024, 1, 3, 0, 0, 0, tzinfo=datetime.timezone.utc)


# ---------------------------------------------------------------------------
# In-memory fakes for the filesystem and archiver
# ---------------------------------------------------------------------------

@dataclass
class FakeNode:
    is_dir: bool = False
    modified: datetime.datetime = NOW
    size: int = 0
    mode: int = 0o600
    owner: typing.Optional[str] = None
    group: typing.Optional[str] = None


@dataclass
class FakeFilesystem:
    nodes: dict = field(default_factory=dict)
    unwritable: set = field(default_factory=set)
    fail_mkdir: bool = False
    fail_remove: set = field(default_factory=set)
    fail_rename: bool = False
    fail_chown: bool = False
    fail_chmod: bool = False
    locked: set = field(default_factory=set)
    removed: list = field(default_factory=list)

    def add_dir(self, path, **kwargs):
        self.nodes[pathlib.Path(path)] = FakeNode(is_dir=True, **kwargs)

    def add_file(self, path, **kwargs):
        self.nodes[pathlib.Path(path)] = FakeNode(**kwargs)

    def exists(self, path):
        return pathlib.Path(path) in self.nodes

    def is_directory(self, path):
        node = self.nodes.get(pathlib.Path(path))
        return node is not None and node.is_dir

    def make_directory(self, path, mode):
        if self.fail_mkdir:
            raise PermissionError(13, "Permission denied", str(path))
        self.nodes[pathlib.Path(path)] = FakeNode(is_dir=True, mode=mode)

    def is_writable(self, path):
        return pathlib.Path(path) not in self.unwritable

    def list_entries(self, directory):
        directory = pathlib.Path(directory)
        if directory not in self.nodes:
            raise FileNotFoundError(2, "No such file or directory", str(directory))
        return [
            ArchiveEntry(
                path=path, modified=node.modified, size=node.size, is_file=not node.is_dir
            )
            for path, node in self.nodes.items()
            if path.parent == directory
        ]

    def remove(self, path, missing_ok=False):
        path = pathlib.Path(path)
        if path in self.fail_remove:
            raise PermissionError(13, "Permission denied", str(path))
        if path not in self.nodes:
            if missing_ok:
                return
            raise FileNotFoundError(2, "No such file or directory", str(path))
        del self.nodes[path]
        self.removed.append(path)

    def rename(self, source, target):
        if self.fail_rename:
            raise OSError(18, "Invalid cross-device link", str(source))
        self.nodes[pathlib.Path(target)] = self.nodes.pop(pathlib.Path(source))

    def change_owner(self, path, user, group):
        if self.fail_chown:
            raise PermissionError(1, "Operation not permitted", str(path))
        node = self.nodes[pathlib.Path(path)]
        node.owner = user
        node.group = group

    def change_mode(self, path, mode):
        if self.fail_chmod:
            raise PermissionError(1, "Operation not permitted", str(path))
        self.nodes[pathlib.Path(path)].mode = mode

    @contextlib.contextmanager
    def lock(self, path):
        path = pathlib.Path(path)
        if path in self.locked:
            raise LockHeldError(f"Another backup run holds the lock '{path}'")
        self.locked.add(path)
        try:
            yield
        finally:
            self.locked.discard(path)


class FakeArchiver:
    """Records what it was asked to archive and writes a node at the target."""

    def __init__(self, filesystem, fail=None, leave_partial=True, warning=None):
        self.filesystem = filesystem
        self.fail = fail
        self.leave_partial = leave_partial
        self.warning = warning
        self.calls = []

    def create(self, sources, target):
        self.calls.append((list(sources), target))
        if self.leave_partial:
            self.filesystem.add_file(target, size=1024)
        if self.fail is not None:
            raise self.fail
        return self.warning


def set_timezone(name):
    os.environ["TZ"] = name
    time.tzset()


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def reset_helper_state():
    yield
    helper.detach_log_file()
    helper.verbose = False


@pytest.fixture(autouse=True)
def local_timezone():
    """Run every test with TZ=UTC; tests may switch zones with set_timezone()."""
    original = os.environ.get("TZ")
    set_timezone("UTC")
    yield
    if original is None:
        os.environ.pop("TZ", None)
    else:
        os.environ["TZ"] = original
    time.tzset()


@pytest.fixture
def fake_fs():
    fs = FakeFilesystem()
    fs.add_dir("/")
    return fs


@pytest.fixture
def fake_archiver(fake_fs):
    return FakeArchiver(fake_fs)


@pytest.fixture
def config():
    return BackupConfiguration(
        destination="/backup",
        sources=["/a", "/b"],
        owner="backup",
        retention="7d",
    )


@pytest.fixture
def clock():
    return lambda: NOW

