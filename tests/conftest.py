"""
Shared pytest fixtures for ProBackup tests.

This module provides fixtures for:
- Flask app, test client and CLI runner
- A BackupManager wired with local storage, filesystem adapter and codecs
- Mock fixtures for external services (S3, SSH)
- Temporary file fixtures
"""

import os
import shutil
import tempfile
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from probackup import create_app
from probackup.backup.compression import GzipCodec, ZipCodec
from probackup.backup.events import EventSink
from probackup.backup.manager import BackupManager, RegistryBuilder
from probackup.backup.sources import FilesystemAdapter
from probackup.backup.storage import LocalStorage


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    All data directories live in a throwaway temp directory.
    """
    temp_dir = tempfile.mkdtemp()

    app = create_app('testing', overrides={
        'BACKUP_DIR': os.path.join(temp_dir, 'backups'),
        'TEMP_DIR': os.path.join(temp_dir, 'temp'),
        'LOG_DIR': os.path.join(temp_dir, 'logs'),
        'RETENTION_DAYS': {'database': 0, 'filesystem': 0},
    })

    yield app

    # Cleanup
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def runner(app):
    """Flask CLI test runner."""
    return app.test_cli_runner()


@pytest.fixture
def backup_dir(tmp_path):
    """Base directory for backup output."""
    path = tmp_path / 'backups'
    path.mkdir()
    return path


@pytest.fixture
def event_log():
    """
    EventSink that records every dispatched event.

    Returns (sink, events) where events is the list of received BackupEvents.
    """
    sink = EventSink()
    events = []
    sink.subscribe('*', events.append)
    return sink, events


@pytest.fixture
def make_manager(backup_dir, tmp_path):
    """
    Factory for BackupManagers.

    By default the registry holds a FilesystemAdapter, LocalStorage rooted at
    backup_dir, and the gzip and zip codecs. Extra adapters/storages can be
    passed in; they are registered after the defaults.
    """
    def _make(adapters=(), storages=None, connections=(), default_connection=None,
              retention_days=None, events=None, filesystem=True, local=True):
        builder = RegistryBuilder()
        if filesystem:
            builder.add_adapter(FilesystemAdapter())
        for adapter in adapters:
            builder.add_adapter(adapter)
        if local:
            builder.add_storage('local', LocalStorage(str(backup_dir)))
        for name, backend in (storages or {}).items():
            builder.add_storage(name, backend)
        for connection in connections:
            builder.add_connection(connection)
        builder.set_default_connection(default_connection)
        builder.add_codec('gzip', GzipCodec())
        builder.add_codec('zip', ZipCodec())

        return BackupManager(
            builder.build(),
            base_dir=str(backup_dir),
            retention_days=retention_days or {},
            events=events,
            temp_dir=str(tmp_path / 'scratch'),
        )

    return _make


@pytest.fixture
def source_tree(tmp_path):
    """
    Create a directory tree to back up.

    Creates:
    - file1.txt ("A")
    - subdir/file2.txt ("B")
    - excluded/file3.txt (excluded in tests)
    """
    root = tmp_path / 'source'
    (root / 'subdir').mkdir(parents=True)
    (root / 'excluded').mkdir()
    (root / 'file1.txt').write_text('A')
    (root / 'subdir' / 'file2.txt').write_text('B')
    (root / 'excluded' / 'file3.txt').write_text('C')
    return root


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - test_file1.txt
    - test_file2.log
    - nested/test_file3.txt
    - test_file.pyc (should be excluded in tests)
    """
    (tmp_path / 'test_file1.txt').write_text('Test content 1')
    (tmp_path / 'test_file2.log').write_text('Test log content')

    nested_dir = tmp_path / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    (tmp_path / 'test_file.pyc').write_bytes(b'compiled python')

    return tmp_path


@pytest.fixture
def mock_s3():
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
    Mock paramiko SSHClient for SFTP storage testing.

    Returns the patched SSHClient class; its open_sftp() returns a MagicMock.
    """
    with patch('probackup.backup.storage.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture(scope='function')
def mock_gcs_client():
    """
    Mock google-cloud-storage Client for GCS storage testing.

    Returns the patched Client instance; its bucket() returns a MagicMock.
    """
    with patch('probackup.backup.storage.gcs.Client') as mock_client:
        yield mock_client.return_value


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('probackup.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance
