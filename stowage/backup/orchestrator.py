"""
Backup orchestrator - sequences the create, restore and delete workflows.

Create:
1. Generate a name unused in the index
2. Run every configured step's backup() into TEMP_DIR/<name>
3. Compress the working directory into an archive under TEMP_DIR
4. Upload the archive to remote storage, remove the local archive
5. Remove the working directory
6. Add the backup to the index (the only commit point)

Restore:
1. Look up the backup in the index
2. Download and extract its archive into TEMP_DIR/<name>
3. Run restore() of the steps recorded in the backup's meta, in order
4. Commit staged step changes and the database session
5. Remove the working directory and archive, whatever happened

Delete:
1. Remove the backup from the index
2. Remove its archive from remote storage, if present

The orchestrator is the only writer of index entries and the only owner of
working directories. Operations on the same backup name are serialized,
across processes when LOCK_DIR is set.
"""

import os
import re
import copy
import time
import fcntl
import shutil
import hashlib
import logging
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Optional, Callable, List

from flask import current_app

from stowage import db
from stowage.models import Backup
from .errors import (
    BackupIndexError,
    BackupLockedError,
    CompressionError,
    NoStepsConfiguredError,
    OperationCancelledError,
    StorageError,
)
from .compression import Compressor, get_compressor, get_archive_size
from .index import BackupIndex
from .naming import NameGenerator, create_name_generator
from .steps import StepRunner
from .storage import RemoteStorage, create_storage, copy_stream_to_file

logger = logging.getLogger(__name__)


NAME_GENERATION_ATTEMPTS = 5

SAFE_LOCK_NAME = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]*$")


class NameLock:
    """
    Per-name mutual exclusion.

    Threads of one process are serialized by a reference counted registry of
    threading locks, so the registry only holds names that are currently in
    use. With a lock_dir, the holder also takes an exclusive flock on
    <lock_dir>/<name>.lock, which serializes gunicorn workers, CLI commands
    and the scheduler sharing the same data directory.

    Args:
        lock_dir: Directory for lock files (None: this process only)
    """

    def __init__(self, lock_dir: Optional[str] = None):
        self.lock_dir = lock_dir
        self._guard = threading.Lock()
        self._locks = {}

    def lock_path(self, name: str) -> str:
        """Lock file of a name; names unsafe as filenames are hashed."""
        if not SAFE_LOCK_NAME.match(name):
            name = hashlib.sha256(name.encode('utf-8')).hexdigest()
        return os.path.join(self.lock_dir, f"{name}.lock")

    @contextmanager
    def hold(self, name: str, blocking: bool = True):
        """
        Hold the lock for name for the duration of the with-block.

        Raises:
            BackupLockedError: If blocking is False and the lock is taken
        """
        with self._guard:
            entry = self._locks.setdefault(name, [threading.Lock(), 0])
            entry[1] += 1

        try:
            if not entry[0].acquire(blocking=blocking):
                raise BackupLockedError(f"Another operation is in progress for backup: {name}")
            try:
                with self._hold_file(name, blocking):
                    yield
            finally:
                entry[0].release()
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[name]

    @contextmanager
    def _hold_file(self, name: str, blocking: bool):
        if self.lock_dir is None:
            yield
            return

        os.makedirs(self.lock_dir, exist_ok=True)

        # Lock files are never removed; unlinking one could let two holders
        # lock different inodes for the same name
        with open(self.lock_path(name), 'a') as lock_file:
            flags = fcntl.LOCK_EX if blocking else fcntl.LOCK_EX | fcntl.LOCK_NB
            try:
                fcntl.flock(lock_file.fileno(), flags)
            except BlockingIOError:
                raise BackupLockedError(
                    f"Another process is operating on backup: {name}"
                ) from None
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def is_locked(self, name: str) -> bool:
        """Whether a thread of this process holds the lock for name."""
        with self._guard:
            entry = self._locks.get(name)
            return entry is not None and entry[0].locked()


# One registry per lock directory, shared by every BackupService in the process
_shared_locks = {}
_shared_locks_guard = threading.Lock()


def shared_name_lock(lock_dir: Optional[str] = None) -> NameLock:
    with _shared_locks_guard:
        if lock_dir not in _shared_locks:
            _shared_locks[lock_dir] = NameLock(lock_dir)
        return _shared_locks[lock_dir]


def deadline_cancellation(seconds: float) -> Callable:
    """
    Build a cancellation check that fires once a deadline has passed.

    Args:
        seconds: Time budget from now

    Returns:
        Callable raising OperationCancelledError after the deadline
    """
    deadline = time.monotonic() + seconds

    def check():
        if time.monotonic() > deadline:
            raise OperationCancelledError(f"Operation exceeded its deadline of {seconds} seconds")

    return check


class BackupService:
    """
    Creates, restores and deletes backups.

    Args:
        config: Flask config (or any mapping with the same keys)
        index: Backup index (default: BackupIndex)
        storage: Remote storage (default: built from FILESYSTEM_TYPE on first use)
        name_generator: Name generator (default: from BACKUP_NAME_GENERATOR)
        step_runner: Step runner (default: StepRunner over STEP_REGISTRY)
        locks: Per-name lock registry (default: shared registry over LOCK_DIR)
    """

    def __init__(
        self,
        config,
        index: Optional[BackupIndex] = None,
        storage: Optional[RemoteStorage] = None,
        name_generator: Optional[NameGenerator] = None,
        step_runner: Optional[StepRunner] = None,
        locks: Optional[NameLock] = None
    ):
        self.config = config
        self.temp_path = config['TEMP_DIR']
        self.index = index or BackupIndex()
        self._storage = storage
        self.name_generator = name_generator or create_name_generator(
            config.get('BACKUP_NAME_GENERATOR', 'timestamp'),
            prefix=config.get('BACKUP_NAME_PREFIX', 'backup')
        )
        self.step_runner = step_runner or StepRunner()
        self.locks = locks or shared_name_lock(config.get('LOCK_DIR'))

    @classmethod
    def from_app(cls, app=None) -> 'BackupService':
        """Build a service from the (current) Flask app's config."""
        app = app or current_app
        return cls(app.config)

    @property
    def storage(self) -> RemoteStorage:
        # Built lazily so listing backups never needs storage credentials
        if self._storage is None:
            self._storage = create_storage(self.config)
        return self._storage

    @property
    def step_configs(self) -> dict:
        return self.config.get('BACKUP_STEPS') or {}

    # Queries

    def get_backups(self, offset: int = 0, limit: int = 0) -> List[Backup]:
        return self.index.list(offset, limit)

    def get_backup(self, name: str) -> Backup:
        return self.index.get(name)

    def get_count(self) -> int:
        return self.index.count()

    def no_steps_configured(self) -> bool:
        return len(self.step_configs) == 0

    # Helpers

    def get_compressor(self, identifier: Optional[str] = None) -> Compressor:
        """
        Resolve a compressor, defaulting to BACKUP_COMPRESSOR.

        Raises:
            ValueError: If the identifier is unknown
        """
        return get_compressor(identifier or self.config['BACKUP_COMPRESSOR'])

    def generate_backup_name(self) -> str:
        """
        Generate a name not yet present in the index.

        Raises:
            BackupIndexError: If every attempt collided
        """
        for _ in range(NAME_GENERATION_ATTEMPTS):
            name = self.name_generator.generate()
            if not self.index.has(name):
                return name
            logger.warning(f"Generated backup name already exists, retrying: {name}")

        raise BackupIndexError(
            f"Could not generate an unused backup name after {NAME_GENERATION_ATTEMPTS} attempts"
        )

    def get_temporary_backup_path(self, name: str = '', create: bool = True) -> str:
        path = os.path.join(self.temp_path, name)

        if create:
            os.makedirs(path, exist_ok=True)

        return path

    def archive_filename(self, backup: Backup) -> str:
        """
        Remote key of a backup's archive, derived with the compressor recorded
        in its meta. Falls back to the default compressor when the recorded
        one is no longer known.
        """
        try:
            compressor = self.get_compressor(backup.compressor)
        except ValueError:
            logger.warning(
                f"Backup {backup.name} was created with unknown compressor "
                f"{backup.compressor!r}; using default {self.config['BACKUP_COMPRESSOR']!r}"
            )
            compressor = self.get_compressor()

        return compressor.generate_filename(backup.name)

    def _remove_directory(self, path: str):
        """Remove a working directory; failures are logged, not raised."""
        if path and os.path.exists(path):
            try:
                shutil.rmtree(path)
            except OSError as e:
                logger.warning(f"Failed to clean up temporary directory {path}: {e}")

    def _remove_file(self, path: Optional[str]):
        if path and os.path.exists(path):
            try:
                os.remove(path)
            except OSError as e:
                logger.warning(f"Failed to clean up temporary file {path}: {e}")

    # Workflows

    def create_backup(self, cancellation_check: Optional[Callable] = None) -> Backup:
        """
        Create a backup from the configured steps.

        Args:
            cancellation_check: Optional callable raising OperationCancelledError
                to abort between steps and during upload

        Returns:
            The indexed Backup

        Raises:
            NoStepsConfiguredError: If BACKUP_STEPS is empty
            StepError: If a step fails (nothing is indexed)
            CompressionError: If no readable archive was produced (the working
                directory is kept for inspection)
            StorageError: If the upload fails (nothing is indexed)
            BackupIndexError: If the index rejects the entry
        """
        if self.no_steps_configured():
            raise NoStepsConfiguredError("No backup steps configured. Set BACKUP_STEPS.")

        # Snapshot configuration so the recorded meta matches what ran
        step_configs = copy.deepcopy(self.step_configs)
        compressor = self.get_compressor()
        name = self.generate_backup_name()

        with self.locks.hold(name):
            return self._create_backup(name, step_configs, compressor, cancellation_check)

    def _create_backup(
        self,
        name: str,
        step_configs: dict,
        compressor: Compressor,
        cancellation_check: Optional[Callable]
    ) -> Backup:
        logger.info(f"Creating backup {name}")
        backup_path = self.get_temporary_backup_path(name)

        try:
            steps = self.step_runner.instantiate(backup_path, step_configs)
            self.step_runner.run_backup(steps, cancellation_check)
        except Exception as e:
            logger.error(f"Backup {name} failed while running steps: {e}")
            self._remove_directory(backup_path)
            raise

        meta = {
            'steps': step_configs,
            'compressor': compressor.identifier
        }

        # Create archive; on failure the working directory stays for diagnosis
        try:
            archive_path = compressor.compress(backup_path, self.temp_path)
        except CompressionError as e:
            logger.error(f"Couldn't create archive for backup {name} (working directory kept at {backup_path}): {e}")
            raise

        if not archive_path or not os.path.isfile(archive_path) or not os.access(archive_path, os.R_OK):
            logger.error(f"Couldn't create backup archive file: {archive_path} (working directory kept at {backup_path})")
            raise CompressionError(f"Couldn't create backup archive file: {archive_path}")

        logger.info(f"Archive created for backup {name}: {get_archive_size(archive_path)} bytes")

        # Upload to remote storage and delete the local archive
        filename = compressor.generate_filename(name)
        try:
            with open(archive_path, 'rb') as source:
                self.storage.write_stream(filename, source, cancellation_check)
        except Exception as e:
            logger.error(f"Upload of backup {name} as {filename} failed: {e}")
            self._remove_directory(backup_path)
            raise
        finally:
            self._remove_file(archive_path)

        self._remove_directory(backup_path)

        # Update index
        try:
            backup = self.index.add(name, datetime.utcnow(), meta)
        except BackupIndexError as e:
            logger.error(f"Backup {name} uploaded but could not be indexed: {e}")
            self._delete_unindexed_archive(name, filename)
            raise

        logger.info(f"Added backup {name}")
        return backup

    def _delete_unindexed_archive(self, name: str, filename: str):
        """Keep storage in line with the index after a failed index write."""
        try:
            self.storage.delete(filename)
        except StorageError as e:
            logger.error(f"Orphaned archive {filename} of unindexed backup {name} could not be deleted: {e}")

    def restore_backup(self, name: str, cancellation_check: Optional[Callable] = None):
        """
        Restore a backup using the steps recorded when it was created.

        Raises:
            BackupNotFoundError: If name is not in the index (nothing is created)
            ObjectNotFoundError: If the archive is missing from storage
            StorageError, DecompressionError, StepError: On failure (staged
                step changes are discarded, nothing is committed)
        """
        with self.locks.hold(name):
            backup = self.index.get(name)
            self._restore_backup(backup, cancellation_check)

    def _restore_backup(self, backup: Backup, cancellation_check: Optional[Callable]):
        name = backup.name
        logger.info(f"Restoring backup {name}")

        # Start from an empty working directory
        backup_path = self.get_temporary_backup_path(name, create=False)
        self._remove_directory(backup_path)
        self.get_temporary_backup_path(name)

        archive_path = None
        steps = []

        try:
            compressor = self.get_compressor(backup.compressor)
            filename = compressor.generate_filename(name)
            archive_path = os.path.join(self.temp_path, filename)

            # Download archive from storage to temp folder
            copy_stream_to_file(self.storage.read_stream(filename), archive_path, cancellation_check)

            compressor.decompress(archive_path, backup_path)

            # Use the steps stored with the backup, not the current configuration
            steps = self.step_runner.instantiate(backup_path, backup.steps)

            try:
                self.step_runner.run_restore(steps, cancellation_check)
                self.step_runner.commit(steps)
            except Exception:
                self.step_runner.discard(steps)
                raise

            # Persist all changes from the steps
            db.session.commit()

        except Exception as e:
            logger.error(f"Restore of backup {name} failed: {e}")
            raise

        finally:
            self._remove_directory(backup_path)
            self._remove_file(archive_path)

        logger.info(f"Restored backup {name}")

    def delete_backup(self, name: str) -> bool:
        """
        Delete a backup from the index and its archive from storage.

        Raises:
            BackupNotFoundError: If name is not in the index (storage untouched)
            StorageError: If the archive could not be removed after the index
                entry was; the remote object is then orphaned
        """
        with self.locks.hold(name):
            backup = self.index.get(name)
            filename = self.archive_filename(backup)
            storage = self.storage

            self.index.delete(name)

            try:
                if storage.has(filename):
                    storage.delete(filename)
            except StorageError as e:
                logger.error(
                    f"Backup {name} removed from index but its archive {filename} "
                    f"could not be deleted, leaving an orphaned object: {e}"
                )
                raise

        logger.info(f"Deleted backup {name}")
        return True
