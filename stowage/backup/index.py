"""
Backup index - the durable catalog of existing backups.

The index is the single source of truth for whether a backup exists;
remote storage is expected to mirror it. Every write commits on its own, so
callers never observe a half-written entry.
"""

import json
import logging
from datetime import datetime
from typing import List

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from stowage import db
from stowage.models import Backup
from .errors import BackupNotFoundError, BackupIndexError

logger = logging.getLogger(__name__)


class BackupIndex:
    """Catalog of backups stored in the application database."""

    def list(self, offset: int = 0, limit: int = 0) -> List[Backup]:
        """
        List backups in insertion order.

        Args:
            offset: Number of backups to skip
            limit: Max number of backups (0 = no limit)
        """
        offset = max(offset or 0, 0)
        limit = max(limit or 0, 0)

        query = Backup.query.order_by(Backup.id.asc())

        if offset:
            query = query.offset(offset)
        if limit:
            query = query.limit(limit)

        return query.all()

    def get(self, name: str) -> Backup:
        """
        Raises:
            BackupNotFoundError: If no backup has this name
        """
        backup = Backup.query.filter_by(name=name).first()

        if backup is None:
            raise BackupNotFoundError(name)

        return backup

    def has(self, name: str) -> bool:
        return db.session.query(Backup.id).filter_by(name=name).first() is not None

    def names(self) -> List[str]:
        return [row.name for row in db.session.query(Backup.name).order_by(Backup.id.asc())]

    def add(self, name: str, created_at: datetime, meta: dict) -> Backup:
        """
        Append a backup to the index.

        Args:
            name: Unique backup name
            created_at: Creation time (UTC)
            meta: {'steps': {...}, 'compressor': '...'}

        Returns:
            The stored Backup

        Raises:
            BackupIndexError: If the name exists or the write fails
        """
        if self.has(name):
            raise BackupIndexError(f"Backup already exists in index: {name}")

        backup = Backup(
            name=name,
            created_at=created_at,
            meta_json=json.dumps(meta)
        )

        try:
            db.session.add(backup)
            db.session.commit()
        except IntegrityError as e:
            db.session.rollback()
            raise BackupIndexError(f"Backup already exists in index: {name}") from e
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BackupIndexError(f"Failed to add backup {name} to index: {e}") from e

        logger.debug(f"Index entry added: {name}")
        return backup

    def delete(self, name: str):
        """
        Remove a backup from the index.

        Raises:
            BackupNotFoundError: If no backup has this name
            BackupIndexError: If the write fails
        """
        backup = self.get(name)

        try:
            db.session.delete(backup)
            db.session.commit()
        except SQLAlchemyError as e:
            db.session.rollback()
            raise BackupIndexError(f"Failed to delete backup {name} from index: {e}") from e

        logger.debug(f"Index entry deleted: {name}")

    def count(self) -> int:
        return Backup.query.count()
