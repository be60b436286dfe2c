"""
Builds a BackupManager from a configuration mapping.

Configuration is passed in explicitly (usually app.config); nothing here
reads global state.
"""

import logging
from typing import Any, Mapping

from sqlalchemy.exc import ArgumentError

from .adapters import ConnectionInfo, SourceError
from .compression import GzipCodec, ZipCodec
from .databases import create_database_adapter
from .events import EventSink, log_listener
from .manager import BackupManager, RegistryBuilder
from .process import DEFAULT_TIMEOUT
from .sources import FilesystemAdapter
from .storage import GCSStorage, LocalStorage, S3Storage, SFTPConfig, SFTPStorage


logger = logging.getLogger(__name__)


def build_storages(config: Mapping[str, Any]) -> dict:
    """Create the local backend plus S3/GCS/SFTP when they are configured."""
    storages = {'local': LocalStorage(config['BACKUP_DIR'], name='local')}

    s3 = config.get('S3') or {}
    if s3.get('bucket'):
        storages['s3'] = S3Storage(
            bucket_name=s3['bucket'],
            region=s3.get('region') or 'us-east-1',
            access_key=s3.get('access_key'),
            secret_key=s3.get('secret_key'),
            prefix=s3.get('prefix') or '',
            endpoint_url=s3.get('endpoint_url'),
            name='s3',
        )

    gcs = config.get('GCS') or {}
    if gcs.get('bucket'):
        storages['gcs'] = GCSStorage(
            bucket_name=gcs['bucket'],
            project_id=gcs.get('project_id'),
            credentials_file=gcs.get('credentials_file'),
            prefix=gcs.get('prefix') or '',
            name='gcs',
        )

    sftp = config.get('SFTP') or {}
    if sftp.get('host'):
        storages['sftp'] = SFTPStorage(SFTPConfig(
            host=sftp['host'],
            port=int(sftp.get('port') or 22),
            username=sftp.get('username') or '',
            base_path=sftp.get('base_path') or '/backups',
            password=sftp.get('password'),
            private_key=sftp.get('private_key'),
        ), name='sftp')

    return storages


def build_manager(config: Mapping[str, Any], events: EventSink = None) -> BackupManager:
    """
    Wire adapters, storage backends and codecs into a BackupManager.

    Args:
        config: Configuration mapping (see probackup.config.Config)
        events: Notification sink (default: a sink that logs every event)

    Returns:
        Configured BackupManager
    """
    timeout = config.get('COMMAND_TIMEOUT', DEFAULT_TIMEOUT)
    level = int(config.get('COMPRESSION_LEVEL', 6))

    builder = RegistryBuilder()
    builder.add_adapter(FilesystemAdapter(default_paths=config.get('FILESYSTEM_PATHS') or ()))

    for name, url in (config.get('DATABASES') or {}).items():
        if not url:
            continue
        connection = ConnectionInfo(name=name, url=url)
        try:
            builder.add_adapter(create_database_adapter(connection, timeout=timeout))
        except (SourceError, ArgumentError) as e:
            logger.warning(f"Skipping connection '{name}': {e}")
            continue
        builder.add_connection(connection)

    builder.set_default_connection(config.get('DEFAULT_CONNECTION') or 'default')

    for name, backend in build_storages(config).items():
        builder.add_storage(name, backend)

    builder.add_codec('gzip', GzipCodec(level=level))
    builder.add_codec('zip', ZipCodec(level=level))

    if events is None:
        events = EventSink()
        events.subscribe('*', log_listener)

    return BackupManager(
        builder.build(),
        base_dir=config['BACKUP_DIR'],
        default_storage=config.get('DEFAULT_STORAGE') or 'local',
        retention_days=config.get('RETENTION_DAYS') or {},
        events=events,
        temp_dir=config.get('TEMP_DIR'),
    )
