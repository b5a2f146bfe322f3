"""
Unit tests for schema creation and migrations (stowage/migrations.py) and
the start-up work done by create_app.
"""

import sqlite3
from unittest.mock import patch

import pytest
from sqlalchemy import inspect

from stowage import create_app, db
from stowage.models import Backup


def _make_app(tmp_path, database_path):
    return create_app('testing', {
        'SQLALCHEMY_DATABASE_URI': f'sqlite:///{database_path}',
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOCK_DIR': str(tmp_path / 'locks'),
        'LOCAL_BACKUP_DIR': str(tmp_path / 'storage'),
        'LOG_DIR': str(tmp_path / 'logs'),
    })


def test_schema_created_on_empty_database(tmp_path):
    app = _make_app(tmp_path, tmp_path / 'data' / 'index.db')

    with app.app_context():
        assert 'backups' in inspect(db.engine).get_table_names()
        db.engine.dispose()


def test_adds_created_at_to_legacy_index(tmp_path):
    database_path = tmp_path / 'legacy.db'
    connection = sqlite3.connect(database_path)
    connection.execute(
        "CREATE TABLE backups (id INTEGER PRIMARY KEY, name VARCHAR(255) UNIQUE NOT NULL, meta_json TEXT NOT NULL)"
    )
    connection.execute(
        "INSERT INTO backups (name, meta_json) VALUES ('legacy-1', '{\"steps\": {}, \"compressor\": \"zip\"}')"
    )
    connection.commit()
    connection.close()

    app = _make_app(tmp_path, database_path)

    with app.app_context():
        columns = [col['name'] for col in inspect(db.engine).get_columns('backups')]
        assert 'created_at' in columns

        backup = Backup.query.filter_by(name='legacy-1').one()
        assert backup.created_at is not None
        assert backup.compressor == 'zip'
        db.engine.dispose()


def test_create_app_creates_directories(tmp_path):
    _make_app(tmp_path, tmp_path / 'index.db')

    assert (tmp_path / 'temp').is_dir()
    assert (tmp_path / 'storage').is_dir()
    assert (tmp_path / 'logs' / 'stowage.log').exists()


@pytest.fixture
def scheduler_calls():
    with patch('stowage.scheduler.init_scheduler') as init_scheduler, \
            patch('stowage.scheduler.start_scheduler') as start_scheduler, \
            patch('stowage.scheduler.stop_scheduler'):
        yield init_scheduler, start_scheduler


def _make_production_app(tmp_path):
    return create_app('production', {
        'SQLALCHEMY_DATABASE_URI': f"sqlite:///{tmp_path / 'index.db'}",
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOCK_DIR': str(tmp_path / 'locks'),
        'LOG_DIR': str(tmp_path / 'logs'),
    })


def test_scheduler_not_started_outside_scheduler_worker(tmp_path, monkeypatch, scheduler_calls):
    """A plain `flask backup ...` process must not run scheduled jobs."""
    monkeypatch.delenv('SCHEDULER_WORKER', raising=False)
    monkeypatch.delenv('WERKZEUG_RUN_MAIN', raising=False)
    init_scheduler, start_scheduler = scheduler_calls

    _make_production_app(tmp_path)

    init_scheduler.assert_not_called()
    start_scheduler.assert_not_called()


def test_scheduler_started_in_designated_worker(tmp_path, monkeypatch, scheduler_calls):
    monkeypatch.setenv('SCHEDULER_WORKER', 'true')
    init_scheduler, start_scheduler = scheduler_calls

    app = _make_production_app(tmp_path)

    init_scheduler.assert_called_once_with(app)
    start_scheduler.assert_called_once()
