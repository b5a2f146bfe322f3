"""
Retention policy enforcement and index/storage reconciliation.

Deleting a backup removes the index entry before the archive, so a failed
storage delete leaves an orphaned object behind. reconcile() finds those
(and index entries whose archive vanished) by comparing both sides.
"""

import logging
from datetime import datetime, timedelta
from typing import Dict, Any, List

from .errors import BackupError

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Applies RETENTION_MAX_COUNT / RETENTION_MAX_AGE_DAYS to the index.

    Args:
        service: BackupService used for every deletion
    """

    def __init__(self, service):
        self.service = service
        self.logs = []

    def _log(self, message: str):
        logger.info(message)
        self.logs.append(message)

    def select_expired(self) -> List[str]:
        """
        Names of backups the policy would delete, oldest first.
        """
        max_count = self.service.config.get('RETENTION_MAX_COUNT')
        max_age_days = self.service.config.get('RETENTION_MAX_AGE_DAYS')

        backups = self.service.get_backups()
        expired = []

        if max_count is not None and len(backups) > max_count:
            excess = len(backups) - max_count
            expired.extend(backup.name for backup in backups[:excess])

        if max_age_days is not None:
            cutoff_date = datetime.utcnow() - timedelta(days=max_age_days)
            for backup in backups:
                if backup.created_at < cutoff_date and backup.name not in expired:
                    expired.append(backup.name)

        return expired

    def enforce_policy(self) -> Dict[str, Any]:
        """
        Delete expired backups.

        A failing deletion is recorded and does not stop the others.

        Returns:
            {'deleted': [...], 'errors': [...], 'logs': [...]}
        """
        self._log("Starting retention policy enforcement")

        summary = {
            'deleted': [],
            'errors': []
        }

        for name in self.select_expired():
            try:
                self.service.delete_backup(name)
                summary['deleted'].append(name)
                self._log(f"Deleted expired backup: {name}")
            except BackupError as e:
                error_msg = f"Failed to delete expired backup {name}: {e}"
                logger.error(error_msg)
                self.logs.append(error_msg)
                summary['errors'].append(error_msg)

        self._log(
            f"Retention enforcement complete. "
            f"Deleted: {len(summary['deleted'])}, "
            f"Errors: {len(summary['errors'])}"
        )

        summary['logs'] = self.logs
        return summary

    def reconcile(self, remove_orphans: bool = False) -> Dict[str, Any]:
        """
        Compare index entries with the objects in remote storage.

        Args:
            remove_orphans: Delete remote objects no index entry refers to

        Returns:
            {'orphaned_objects': [...], 'missing_archives': [...],
             'removed': [...], 'errors': [...]}

        Raises:
            StorageError: If storage cannot be listed
        """
        storage = self.service.storage
        remote_keys = set(storage.list_keys())

        expected = {}
        for backup in self.service.get_backups():
            expected[self.service.archive_filename(backup)] = backup.name

        result = {
            'orphaned_objects': sorted(remote_keys - set(expected)),
            'missing_archives': sorted(
                name for filename, name in expected.items() if filename not in remote_keys
            ),
            'removed': [],
            'errors': []
        }

        for name in result['missing_archives']:
            logger.warning(f"Backup {name} is indexed but its archive is missing from storage")

        for key in result['orphaned_objects']:
            if not remove_orphans:
                logger.warning(f"Orphaned object in storage: {key}")
                continue

            try:
                storage.delete(key)
                result['removed'].append(key)
                self._log(f"Removed orphaned object: {key}")
            except BackupError as e:
                error_msg = f"Failed to remove orphaned object {key}: {e}"
                logger.error(error_msg)
                result['errors'].append(error_msg)

        return result
