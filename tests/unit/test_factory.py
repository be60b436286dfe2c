"""
Unit tests for wiring a BackupManager from configuration (probackup/backup/factory.py).
"""

import sqlite3

from probackup.backup.databases import SQLiteAdapter
from probackup.backup.factory import build_manager, build_storages
from probackup.backup.sources import FilesystemAdapter
from probackup.backup.storage import GCSStorage, LocalStorage, S3Storage, SFTPStorage


def _config(tmp_path, **overrides):
    config = {
        'BACKUP_DIR': str(tmp_path / 'backups'),
        'TEMP_DIR': str(tmp_path / 'temp'),
        'DATABASES': {},
        'RETENTION_DAYS': {'database': 14},
    }
    config.update(overrides)
    return config


class TestBuildStorages:
    def test_local_only_by_default(self, tmp_path):
        storages = build_storages(_config(tmp_path))

        assert list(storages) == ['local']
        assert isinstance(storages['local'], LocalStorage)

    def test_remote_backends_when_configured(self, tmp_path):
        storages = build_storages(_config(
            tmp_path,
            S3={'bucket': 'backups', 'region': 'eu-west-1', 'prefix': 'prod'},
            SFTP={'host': 'backup.example.com', 'username': 'backup', 'port': '2222'},
        ))

        assert isinstance(storages['s3'], S3Storage)
        assert storages['s3'].prefix == 'prod'
        assert isinstance(storages['sftp'], SFTPStorage)
        assert storages['sftp'].config.port == 2222
        assert storages['sftp'].config.base_path == '/backups'

    def test_gcs_backend_when_configured(self, tmp_path, mock_gcs_client):
        storages = build_storages(_config(
            tmp_path,
            GCS={'bucket': 'backups', 'project_id': 'acme', 'prefix': 'prod/'},
        ))

        assert list(storages) == ['local', 'gcs']
        assert isinstance(storages['gcs'], GCSStorage)
        assert storages['gcs'].prefix == 'prod'
        mock_gcs_client.bucket.assert_called_once_with('backups')


class TestBuildManager:
    """Test adapter and connection registration."""

    def test_connections_become_adapters(self, tmp_path):
        database = tmp_path / 'app.db'
        sqlite3.connect(database).close()
        manager = build_manager(_config(tmp_path, DATABASES={'default': f"sqlite:///{database}"}))

        adapters = manager.registry.adapters
        assert isinstance(adapters[0], FilesystemAdapter)
        assert isinstance(adapters[1], SQLiteAdapter)
        assert manager.registry.default_connection == 'default'
        assert isinstance(manager.resolve_adapter('database'), SQLiteAdapter)

    def test_unusable_connections_skipped(self, tmp_path):
        """Test unknown platforms and malformed URLs are logged and skipped."""
        manager = build_manager(_config(tmp_path, DATABASES={
            'legacy': 'oracle://scott@localhost/orcl',
            'broken': 'not a url',
            'empty': '',
        }))

        assert len(manager.registry.adapters) == 1
        assert dict(manager.registry.connections) == {}
        assert manager.registry.default_connection is None

    def test_settings_flow_through(self, tmp_path):
        manager = build_manager(_config(tmp_path, DEFAULT_STORAGE='s3', COMPRESSION_LEVEL=9))

        assert manager.default_storage == 's3'
        assert manager.retention.retention_days == {'database': 14}
        assert manager.temp_dir == str(tmp_path / 'temp')
        assert manager.registry.codecs['gzip'].level == 9
        assert set(manager.registry.codecs) == {'gzip', 'zip'}
        assert manager.events is not None
