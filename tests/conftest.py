"""
Shared pytest fixtures for Stowage tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- Database setup with in-memory SQLite
- Test step classes and a backup service wired to local storage
- Mock fixtures for external services (S3, SSH)
- Temporary file fixtures
"""

import os
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from stowage import create_app, db as _db
from stowage.backup.orchestrator import BackupService, NameLock
from stowage.backup.steps import Step, StepRunner, STEP_REGISTRY
from stowage.backup.storage import LocalStorage


# Actions performed by the test steps, in order: (identifier, action)
STEP_CALLS = []


class WriterStep(Step):
    """Writes config['content'] to <step_dir>/data.txt and restores it into config['target']."""

    identifier = 'writer'

    def backup(self):
        STEP_CALLS.append((self.identifier, 'backup'))
        self.step_dir.mkdir(parents=True, exist_ok=True)
        (self.step_dir / 'data.txt').write_text(self.config.get('content', ''))

    def restore(self):
        STEP_CALLS.append((self.identifier, 'restore'))
        self.restored = (self.step_dir / 'data.txt').read_text()

    def commit(self):
        STEP_CALLS.append((self.identifier, 'commit'))
        target = self.config.get('target')
        if target:
            Path(target).write_text(self.restored)


class DependentStep(Step):
    """Reads the writer step's output, so it only works after it."""

    identifier = 'dependent'

    def backup(self):
        STEP_CALLS.append((self.identifier, 'backup'))
        source = Path(self.working_dir) / 'writer' / 'data.txt'
        self.step_dir.mkdir(parents=True, exist_ok=True)
        (self.step_dir / 'derived.txt').write_text(source.read_text().upper())

    def restore(self):
        STEP_CALLS.append((self.identifier, 'restore'))

    def commit(self):
        STEP_CALLS.append((self.identifier, 'commit'))

    def discard(self):
        STEP_CALLS.append((self.identifier, 'discard'))


class BrokenStep(Step):
    """Fails whichever action runs."""

    identifier = 'broken'

    def backup(self):
        STEP_CALLS.append((self.identifier, 'backup'))
        raise RuntimeError("step exploded during backup")

    def restore(self):
        STEP_CALLS.append((self.identifier, 'restore'))
        raise RuntimeError("step exploded during restore")


@pytest.fixture(autouse=True)
def step_calls():
    """Actions recorded by the test steps during the current test."""
    STEP_CALLS.clear()
    yield STEP_CALLS
    STEP_CALLS.clear()


@pytest.fixture
def step_registry():
    """Registry with the built-in steps plus the test steps."""
    registry = dict(STEP_REGISTRY)
    registry.update({
        'writer': WriterStep,
        'dependent': DependentStep,
        'broken': BrokenStep,
    })
    return registry


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database and local storage under tmp_path.
    """
    app = create_app('testing', {
        'TEMP_DIR': str(tmp_path / 'temp'),
        'LOCK_DIR': str(tmp_path / 'locks'),
        'LOCAL_BACKUP_DIR': str(tmp_path / 'storage'),
        'LOG_DIR': str(tmp_path / 'logs'),
        'BACKUP_STEPS': {},
    })

    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def auth_headers(app):
    return {'Authorization': f"Bearer {app.config['API_TOKEN']}"}


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture(scope='function')
def storage(app):
    return LocalStorage(app.config['LOCAL_BACKUP_DIR'])


@pytest.fixture(scope='function')
def service(app, db, storage, step_registry):
    """
    BackupService using local storage and the test step registry.

    Steps are configured per test through app.config['BACKUP_STEPS'].
    """
    return BackupService(
        app.config,
        storage=storage,
        step_runner=StepRunner(step_registry),
        locks=NameLock(app.config['LOCK_DIR'])
    )


@pytest.fixture
def live_data(tmp_path):
    """
    Live application state captured by the files step.

    Creates:
    - live/config.ini
    - live/uploads/image.bin
    - live/uploads/nested/notes.txt
    - live/cache.pyc (excluded in tests)
    """
    live = tmp_path / 'live'
    (live / 'uploads' / 'nested').mkdir(parents=True)
    (live / 'config.ini').write_text('[app]\nmode = production\n')
    (live / 'uploads' / 'image.bin').write_bytes(os.urandom(2048))
    (live / 'uploads' / 'nested' / 'notes.txt').write_text('remember the milk')
    (live / 'cache.pyc').write_bytes(b'compiled python')
    return live


@pytest.fixture
def temp_files(tmp_path):
    """
    Create a working directory with test files.

    Creates:
    - work/test_file1.txt
    - work/test_file2.log
    - work/nested/test_file3.txt
    - work/empty/
    """
    work = tmp_path / 'work'
    (work / 'nested').mkdir(parents=True)
    (work / 'empty').mkdir()
    (work / 'test_file1.txt').write_text('Test content 1')
    (work / 'test_file2.log').write_text('Test log content')
    (work / 'nested' / 'test_file3.txt').write_text('Nested test content')
    return work


@pytest.fixture
def aws_credentials(monkeypatch):
    """Fake credentials so boto3 never looks for real ones."""
    monkeypatch.setenv('AWS_ACCESS_KEY_ID', 'testing')
    monkeypatch.setenv('AWS_SECRET_ACCESS_KEY', 'testing')
    monkeypatch.setenv('AWS_DEFAULT_REGION', 'us-east-1')


@pytest.fixture
def mock_s3(aws_credentials):
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')

        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns the patched class; its return value's open_sftp() gives the SFTP mock.
    """
    with patch('stowage.backup.steps.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh
