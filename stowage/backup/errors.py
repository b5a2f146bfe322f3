"""
Exceptions raised by the backup pipeline.

Every expected failure of a create, restore or delete maps to one of these,
so callers (CLI, API, scheduler) can tell a missing backup from a failed
upload without parsing messages.
"""


class BackupError(RuntimeError):
    """Base exception for backup pipeline failures."""


class BackupNotFoundError(BackupError):
    """Raised when no backup with the requested name is in the index."""

    def __init__(self, name: str):
        super().__init__(f"Backup not found: {name}")
        self.name = name


class BackupIndexError(BackupError):
    """Raised when the index rejects a write (duplicate name, database failure)."""


class StepError(BackupError):
    """Raised when a step's backup, restore or commit action fails."""

    def __init__(self, step: str, action: str, cause: Exception):
        super().__init__(f"Step '{step}' failed during {action}: {cause}")
        self.step = step
        self.action = action
        self.cause = cause


class NoStepsConfiguredError(BackupError):
    """Raised when a backup is requested but BACKUP_STEPS is empty."""


class CompressionError(BackupError):
    """Raised when archive creation fails."""


class DecompressionError(BackupError):
    """Raised when an archive cannot be extracted."""


class StorageError(BackupError):
    """Raised when a remote storage operation fails."""


class ObjectNotFoundError(StorageError):
    """Raised when reading a key that is not in remote storage."""

    def __init__(self, key: str):
        super().__init__(f"Object not found in storage: {key}")
        self.key = key


class BackupLockedError(BackupError):
    """Raised when another operation currently holds the backup's lock."""


class OperationCancelledError(BackupError):
    """Raised by a cancellation check to abort a running operation."""
