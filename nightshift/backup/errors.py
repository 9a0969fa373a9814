class BackupError(Exception):
    """Base class for conditions that abort a backup run."""


class DestinationError(BackupError):
    pass


class LockHeldError(BackupError):
    pass


class ArchiveError(BackupError):
    pass


class NothingToArchiveError(ArchiveError):
    pass
