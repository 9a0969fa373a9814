### stdlib imports
import datetime
import enum
import pathlib
import typing

### vendor imports
import pydantic


def _parse_mode(value: typing.Any) -> int:
    # Strings are chmod notation ("644", "0644", "0o644"); ints are already modes
    if isinstance(value, str):
        text = value.strip().lower()
        if text.startswith("0o"):
            text = text[2:]
        value = int(text, 8)
    if isinstance(value, int) and not 0 <= value <= 0o7777:
        raise ValueError(f"mode {value:o} is out of range")
    return value


class BackupConfiguration(pydantic.BaseModel):
    destination: str = "/backup"
    sources: list[str] = []

    # Account that is granted ownership of the backup artifacts
    owner: typing.Optional[str] = "backup"
    group: typing.Optional[str] = None

    retention: str = "7d"
    log_file: typing.Optional[str] = None
    archive_prefix: str = "server_backup"

    directory_mode: int = 0o755
    archive_mode: int = 0o644

    nice: bool = True
    lock: bool = True

    v: typing.Optional[int] = None

    @pydantic.field_validator("sources")
    @classmethod
    def sources_are_absolute(cls, value: list[str]) -> list[str]:
        for entry in value:
            if not pathlib.PurePosixPath(entry).is_absolute():
                raise ValueError(f"source path '{entry}' is not absolute")
        return value

    @pydantic.field_validator("directory_mode", "archive_mode", mode="before")
    @classmethod
    def octal_mode(cls, value: typing.Any) -> int:
        return _parse_mode(value)

    @pydantic.field_validator("archive_prefix")
    @classmethod
    def prefix_is_a_name(cls, value: str) -> str:
        if not value or "/" in value:
            raise ValueError("archive_prefix must be a plain file name prefix")
        return value

    @property
    def destination_path(self) -> pathlib.Path:
        return pathlib.Path(self.destination).expanduser()

    @property
    def log_file_path(self) -> pathlib.Path:
        if self.log_file:
            return pathlib.Path(self.log_file).expanduser()
        return self.destination_path / "backup.log"

    @property
    def owner_group(self) -> typing.Optional[str]:
        return self.group or self.owner


class RunState(str, enum.Enum):
    PENDING = "pending"
    DESTINATION_READY = "destination_ready"
    SOURCES_RESOLVED = "sources_resolved"
    ARCHIVED = "archived"
    PERMISSIONS_APPLIED = "permissions_applied"
    SWEPT_COMPLETE = "swept_complete"

    # Terminal failure states
    DESTINATION_FAILED = "destination_failed"
    LOCK_HELD = "lock_held"
    ARCHIVE_FAILED = "archive_failed"

    @property
    def failed(self) -> bool:
        return self in (
            RunState.DESTINATION_FAILED,
            RunState.LOCK_HELD,
            RunState.ARCHIVE_FAILED,
        )


class ArchiveEntry(pydantic.BaseModel):
    path: pathlib.Path
    modified: datetime.datetime
    size: int = 0
    is_file: bool = True


class SourceResolution(pydantic.BaseModel):
    included: list[pathlib.Path] = []
    missing: list[pathlib.Path] = []


class OwnershipResult(pydantic.BaseModel):
    path: pathlib.Path
    ok: bool = True
    error: typing.Optional[str] = None


class SweepFailure(pydantic.BaseModel):
    path: pathlib.Path
    error: str


class SweepResult(pydantic.BaseModel):
    deleted: list[pathlib.Path] = []
    kept: list[pathlib.Path] = []
    failed: list[SweepFailure] = []
    dry_run: bool = False

    @property
    def ok(self) -> bool:
        return not self.failed


class RunResult(pydantic.BaseModel):
    state: RunState = RunState.PENDING
    timestamp: str
    archive: typing.Optional[pathlib.Path] = None
    sources: typing.Optional[SourceResolution] = None
    ownership: list[OwnershipResult] = []
    sweep: typing.Optional[SweepResult] = None
    error: typing.Optional[str] = None
    warnings: list[str] = []

    @property
    def exit_code(self) -> int:
        return 1 if self.state.failed else 0
