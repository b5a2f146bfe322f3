"""
Database migrations for Stowage.

Simple migration system to handle schema changes without requiring Alembic.
"""

import logging
from sqlalchemy import text, inspect
from stowage import db

logger = logging.getLogger(__name__)


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    This function creates tables if they don't exist and runs any necessary migrations.
    It's designed to be called from multiple Gunicorn workers without conflicts.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if 'backups' not in existing_tables:
            logger.info("Backup index table not found - creating database schema")
            try:
                db.create_all()
                logger.info("Database schema created successfully")
            except Exception as e:
                # Another worker may have created it concurrently
                logger.error(f"Failed to create database schema: {e}")
        else:
            run_migrations(app, inspector)


def run_migrations(app, inspector=None):
    """
    Run all necessary database migrations.

    This function checks the database schema and applies any missing changes.
    """
    if inspector is None:
        inspector = inspect(db.engine)

    # Migration 1: early index versions stored no creation time
    columns = [col['name'] for col in inspector.get_columns('backups')]

    if 'created_at' not in columns:
        logger.info("Running migration: Adding created_at column to backups table")
        try:
            db.session.execute(text(
                "ALTER TABLE backups ADD COLUMN created_at TIMESTAMP"
            ))
            db.session.execute(text(
                "UPDATE backups SET created_at = CURRENT_TIMESTAMP WHERE created_at IS NULL"
            ))
            db.session.commit()
            logger.info("Successfully added created_at column")
        except Exception as e:
            logger.error(f"Failed to add created_at column: {e}")
            db.session.rollback()
            raise
