"""
Backup module for ProBackup.

This module handles the core backup functionality including:
- Source adapters (filesystem and databases)
- Compression and archive coordination
- Storage (local, S3 and SFTP)
- Orchestration and the backup catalog
- Retention policy enforcement
"""

from .manager import BackupManager, RegistryBuilder, NoAdapterFound, BackupNotFound
from .models import BackupRequest, BackupOutcome, CatalogEntry, RestoreOptions, BackupType
from .archive import ArchiveManager
from .storage import LocalStorage, S3Storage, SFTPStorage
from .retention import RetentionManager
from .factory import build_manager

__all__ = [
    'BackupManager',
    'RegistryBuilder',
    'NoAdapterFound',
    'BackupNotFound',
    'BackupRequest',
    'BackupOutcome',
    'CatalogEntry',
    'RestoreOptions',
    'BackupType',
    'ArchiveManager',
    'LocalStorage',
    'S3Storage',
    'SFTPStorage',
    'RetentionManager',
    'build_manager'
]
