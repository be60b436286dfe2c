"""
Backup orchestrator - drives the complete backup and restore workflows.

Backup workflow:
1. Default storage backend and output directory
2. Resolve and validate the source adapter
3. Produce the raw artifact
4. Compress it (if requested)
5. Push it to a remote backend (best effort)
6. Record it in the catalog and apply retention for its type

Restore is the mirror: catalog lookup, retrieve, decompress, adapter restore.

The orchestrator is the failure boundary: adapter, codec and storage faults
become a failed BackupOutcome or a False restore result. The only error that
propagates is BackupNotFound for an unknown restore id.

A BackupManager is meant to run one operation at a time. Catalog mutation is
locked because scheduled jobs run on a worker thread.
"""

import logging
import os
import shutil
import tempfile
import time
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple, Union

from .adapters import ConnectionInfo, SourceAdapter
from .archive import ArchiveManager
from .catalog import Catalog
from .compression import (
    CompressionError,
    generate_archive_filename,
    get_archive_size,
    has_compression_extension,
)
from .events import (
    BACKUP_FAILED,
    POST_BACKUP,
    POST_RESTORE,
    PRE_BACKUP,
    PRE_RESTORE,
    RESTORE_FAILED,
    BackupEvent,
    EventSink,
)
from .models import (
    BackupError,
    BackupOutcome,
    BackupRequest,
    CatalogEntry,
    RestoreOptions,
    logical_type,
    make_backup_id,
)
from .retention import RetentionManager, RetentionReport
from .storage import StorageBackend


logger = logging.getLogger(__name__)

LOCAL_STORAGE = 'local'


class NoAdapterFound(BackupError):
    """Raised when no registered adapter handles a backup type."""
    pass


class BackupNotFound(BackupError):
    """Raised when a backup id is not in the catalog."""
    pass


@dataclass(frozen=True)
class Registry:
    """Immutable set of adapters, storage backends, codecs and connections."""
    adapters: Tuple[SourceAdapter, ...]
    storages: Mapping[str, StorageBackend]
    codecs: Mapping[str, Any]
    connections: Mapping[str, ConnectionInfo]
    default_connection: Optional[str] = None


class RegistryBuilder:
    """Collects registrations, then freezes them into a Registry."""

    def __init__(self):
        self._adapters: List[SourceAdapter] = []
        self._storages: Dict[str, StorageBackend] = {}
        self._codecs: Dict[str, Any] = {}
        self._connections: Dict[str, ConnectionInfo] = {}
        self._default_connection: Optional[str] = None

    def add_adapter(self, adapter: SourceAdapter) -> 'RegistryBuilder':
        self._adapters.append(adapter)
        return self

    def add_storage(self, name: str, backend: StorageBackend) -> 'RegistryBuilder':
        self._storages[name] = backend
        return self

    def add_codec(self, name: str, codec) -> 'RegistryBuilder':
        self._codecs[name] = codec
        return self

    def add_connection(self, connection: ConnectionInfo, default: bool = False) -> 'RegistryBuilder':
        self._connections[connection.name] = connection
        if default:
            self._default_connection = connection.name
        return self

    def set_default_connection(self, name: Optional[str]) -> 'RegistryBuilder':
        self._default_connection = name
        return self

    def build(self) -> Registry:
        default = self._default_connection if self._default_connection in self._connections else None
        return Registry(
            adapters=tuple(self._adapters),
            storages=MappingProxyType(dict(self._storages)),
            codecs=MappingProxyType(dict(self._codecs)),
            connections=MappingProxyType(dict(self._connections)),
            default_connection=default,
        )


class BackupManager:
    """
    Orchestrates backup, restore, catalog and retention operations.
    """

    def __init__(
        self,
        registry: Registry,
        base_dir: str,
        default_storage: str = LOCAL_STORAGE,
        retention_days: Optional[Mapping[str, int]] = None,
        events: Optional[EventSink] = None,
        temp_dir: Optional[str] = None,
    ):
        """
        Initialize backup manager.

        Args:
            registry: Adapters, storage backends, codecs and connections
            base_dir: Directory that holds {type} output directories
            default_storage: Storage backend used when a request names none
            retention_days: Days to keep backups, by type
            events: Notification sink (None disables notifications)
            temp_dir: Parent directory for restore scratch directories
        """
        self.registry = registry
        self.base_dir = base_dir
        self.default_storage = default_storage
        self.events = events
        self.temp_dir = temp_dir
        self.archive = ArchiveManager(registry.codecs, temp_dir=temp_dir)
        self.catalog = Catalog()
        self.retention = RetentionManager(registry.storages, retention_days or {}, self.catalog)

    @property
    def storages(self) -> Mapping[str, StorageBackend]:
        return self.registry.storages

    def _emit(self, name: str, **payload):
        if self.events is None:
            return
        self.events.dispatch(BackupEvent(name=name, **payload))

    # Adapter resolution

    def resolve_adapter(self, backup_type: str, connection_name: Optional[str] = None) -> SourceAdapter:
        """
        Find the adapter for a backup type.

        Adapters that need no connection are tried first. Connection-bound
        adapters must match the requested connection (the explicit one, or the
        default); without any connection context they are skipped.

        Raises:
            NoAdapterFound: If no adapter matches
        """
        for adapter in self.registry.adapters:
            if not adapter.requires_connection and adapter.supports(backup_type):
                return adapter

        requested = self._requested_connection(connection_name)
        if requested is not None:
            candidates = [
                adapter for adapter in self.registry.adapters
                if adapter.requires_connection and adapter.supports(backup_type)
                and adapter.get_connection() is not None
            ]
            for adapter in candidates:
                if adapter.get_connection() == requested:
                    return adapter
            # Default connection only: any adapter on the same platform will do
            if connection_name is None:
                for adapter in candidates:
                    if adapter.get_connection().platform == requested.platform:
                        return adapter

        message = f"No adapter found for backup type '{backup_type}'"
        if connection_name:
            message += f" and connection '{connection_name}'"
        raise NoAdapterFound(message)

    def _requested_connection(self, connection_name: Optional[str]) -> Optional[ConnectionInfo]:
        if connection_name:
            return self.registry.connections.get(connection_name)
        if self.registry.default_connection:
            return self.registry.connections.get(self.registry.default_connection)
        return None

    # Backup

    def backup(self, request: BackupRequest) -> BackupOutcome:
        """
        Run one backup.

        Never raises: every failure is returned as an unsuccessful outcome.
        Platform types (mysql, files, ...) are filed under their logical type.
        """
        started = time.monotonic()
        category = logical_type(request.type)

        if not request.storage:
            request.storage = self.default_storage
        if not request.output_path:
            request.output_path = os.path.join(self.base_dir, category)

        logger.info(f"Starting {request.type} backup '{request.name}' (storage: {request.storage})")
        self._emit(PRE_BACKUP, request=request)

        existing = None
        try:
            os.makedirs(request.output_path, exist_ok=True)
            existing = set(os.listdir(request.output_path))

            adapter = self.resolve_adapter(request.type, request.connection_name)
            errors = adapter.validate(request)
            if errors:
                outcome = BackupOutcome.failed(f"Invalid backup configuration: {'; '.join(errors)}")
            else:
                outcome = adapter.backup(request)
        except NoAdapterFound as e:
            outcome = BackupOutcome.failed(str(e))
        except Exception as e:
            logger.exception(f"Backup '{request.name}' raised")
            outcome = BackupOutcome.failed(str(e))

        if outcome.success and outcome.file_path:
            outcome = self._compress(request, outcome)

        outcome.amend(duration=time.monotonic() - started)

        if not outcome.success:
            if existing is not None:
                self._remove_new_entries(request.output_path, existing)
            return self._finish_failed(request, outcome, started)

        storage_name, key = self._push(request, outcome, category)

        metadata = dict(outcome.metadata)
        if category != request.type:
            metadata['source_type'] = request.type
        entry = CatalogEntry(
            id=make_backup_id(storage_name, key or outcome.file_path),
            type=category,
            name=request.name,
            file_path=outcome.file_path,
            file_size=outcome.file_size or 0,
            created_at=outcome.created_at,
            storage=storage_name,
            key=key,
            metadata=metadata,
        )
        self.catalog.add(entry)
        outcome.amend(metadata={'backup_id': entry.id})

        logger.info(f"Backup '{request.name}' completed: {outcome.file_path} ({outcome.file_size} bytes)")
        self._emit(POST_BACKUP, request=request, outcome=outcome, backup_id=entry.id)

        try:
            self.retention.apply(category)
        except Exception:
            logger.exception(f"Retention for {category} failed after backup '{request.name}'")

        return outcome

    def _finish_failed(self, request: BackupRequest, outcome: BackupOutcome, started: float) -> BackupOutcome:
        outcome.amend(duration=time.monotonic() - started)
        logger.error(f"Backup '{request.name}' failed: {outcome.error}")
        self._emit(BACKUP_FAILED, request=request, outcome=outcome, error=outcome.error)
        return outcome

    def _compress(self, request: BackupRequest, outcome: BackupOutcome) -> BackupOutcome:
        codec_name = request.compression
        if not codec_name and os.path.isdir(outcome.file_path):
            codec_name = 'zip'
        if not codec_name or has_compression_extension(outcome.file_path):
            return outcome

        filename = generate_archive_filename(request.name, codec_name)
        if codec_name == 'gzip' and os.path.isfile(outcome.file_path):
            # Single files are gzipped without a tar step: {name}_{ts}.{ext}.gz
            extension = os.path.splitext(outcome.file_path)[1]
            filename = f"{filename[:-len('.tar.gz')]}{extension}.gz"
        destination = os.path.join(request.output_path, filename)
        try:
            final_path = self.archive.compress(outcome.file_path, destination, codec_name, remove_source=True)
            outcome.amend(
                file_path=final_path,
                file_size=get_archive_size(final_path),
                metadata={'compression': codec_name},
            )
        except (CompressionError, OSError) as e:
            logger.error(f"Compression of {outcome.file_path} failed: {e}")
            return BackupOutcome.failed(f"Compression failed: {e}", duration=outcome.duration)
        return outcome

    def _remove_new_entries(self, directory: str, existing: set):
        try:
            current = set(os.listdir(directory))
        except OSError:
            return
        for name in current - existing:
            path = os.path.join(directory, name)
            logger.info(f"Removing partial artifact {path}")
            if os.path.isdir(path):
                shutil.rmtree(path, ignore_errors=True)
            else:
                try:
                    os.remove(path)
                except OSError as e:
                    logger.warning(f"Failed to remove partial artifact {path}: {e}")

    def _local_key(self, file_path: str) -> str:
        """
        Key of an artifact inside local storage.

        Artifacts written outside the local backend's directory get an empty
        key: they are tracked by file_path only.
        """
        local = self.storages.get(LOCAL_STORAGE)
        if local is None or not hasattr(local, 'key_for'):
            return ''
        return local.key_for(file_path) or ''

    def _push(self, request: BackupRequest, outcome: BackupOutcome, category: str) -> Tuple[str, str]:
        """
        Push the artifact to the requested backend when it is not local.

        Returns:
            (storage name, key) the catalog entry should point at. A failed
            push leaves the entry pointing at the local artifact.
        """
        local_key = (LOCAL_STORAGE, self._local_key(outcome.file_path))
        if request.storage == LOCAL_STORAGE:
            return local_key

        backend = self.storages.get(request.storage)
        if backend is None:
            logger.warning(f"Storage backend '{request.storage}' is not configured, keeping local copy only")
            return local_key

        remote_key = f"{category}/{os.path.basename(outcome.file_path)}"
        try:
            stored = backend.store(outcome.file_path, remote_key)
        except Exception:
            logger.exception(f"Push of {outcome.file_path} to {request.storage} failed")
            stored = False

        if not stored:
            logger.warning(f"Backup kept locally only, push to {request.storage} failed")
            return local_key

        outcome.amend(metadata={'storage': request.storage, 'remote_key': remote_key})
        return request.storage, remote_key

    # Restore

    def restore(self, backup_id: str, options: Union[RestoreOptions, Mapping, None] = None) -> bool:
        """
        Restore a backup from the catalog.

        Raises:
            BackupNotFound: If backup_id is not in the catalog
        """
        entry = self.catalog.get(backup_id)
        if entry is None:
            raise BackupNotFound(f"Backup not found: {backup_id}")

        if not isinstance(options, RestoreOptions):
            options = RestoreOptions.from_mapping(options)

        logger.info(f"Restoring {entry.type} backup {backup_id} from {entry.storage}")
        self._emit(PRE_RESTORE, backup_id=backup_id)

        scratch = None
        try:
            source_type = entry.metadata.get('source_type') or entry.type
            adapter = self.resolve_adapter(source_type, options.connection_name)

            artifact_path = entry.file_path
            if not entry.is_local:
                backend = self.storages.get(entry.storage)
                if backend is None:
                    raise BackupError(f"Storage backend '{entry.storage}' is not configured")
                scratch = self._scratch_dir()
                artifact_path = os.path.join(scratch, os.path.basename(entry.key))
                if not backend.retrieve(entry.key, artifact_path):
                    error = f"Failed to retrieve {entry.key} from {entry.storage}"
                    logger.error(error)
                    self._emit(RESTORE_FAILED, backup_id=backup_id, error=error)
                    return False

            compression = self.archive.detect_compression_type(artifact_path)
            if compression:
                scratch = scratch or self._scratch_dir()
                artifact_path = self.archive.decompress(
                    artifact_path, self._extract_target(scratch, artifact_path), keep_original=True
                )

            restored = adapter.restore(artifact_path, options)
        except Exception as e:
            logger.exception(f"Restore of backup {backup_id} failed")
            self._emit(RESTORE_FAILED, backup_id=backup_id, error=str(e))
            return False
        finally:
            if scratch:
                shutil.rmtree(scratch, ignore_errors=True)

        if restored:
            logger.info(f"Backup {backup_id} restored")
            self._emit(POST_RESTORE, backup_id=backup_id)
        else:
            logger.error(f"Adapter failed to restore backup {backup_id}")
            self._emit(RESTORE_FAILED, backup_id=backup_id, error='Adapter restore failed')
        return bool(restored)

    def _scratch_dir(self) -> str:
        if self.temp_dir:
            os.makedirs(self.temp_dir, exist_ok=True)
        return tempfile.mkdtemp(prefix='probackup_restore_', dir=self.temp_dir)

    @staticmethod
    def _extract_target(scratch: str, artifact_path: str) -> str:
        lowered = artifact_path.lower()
        if lowered.endswith('.zip') or lowered.endswith('.tar.gz'):
            return os.path.join(scratch, 'extracted')
        return os.path.join(scratch, os.path.basename(artifact_path)[:-3])

    # Catalog operations

    def refresh_catalog(self) -> int:
        return self.catalog.refresh(self.storages)

    def list_backups(self, backup_type: Optional[str] = None, storage: Optional[str] = None) -> List[CatalogEntry]:
        return self.catalog.list(backup_type, storage)

    def get_backup(self, backup_id: str) -> Optional[CatalogEntry]:
        return self.catalog.get(backup_id)

    def get_last_backup(self, backup_type: Optional[str] = None) -> Optional[CatalogEntry]:
        return self.catalog.last(backup_type)

    def delete_backup(self, backup_id: str) -> bool:
        """
        Delete a backup from its backend and drop it from the catalog.

        The catalog is left untouched if any delete fails.
        """
        entry = self.catalog.get(backup_id)
        if entry is None:
            return False

        try:
            backend = self.storages.get(entry.storage)
            # Unkeyed entries live outside every backend: only file_path is removed
            if backend is not None and entry.key:
                if not backend.delete(entry.key):
                    logger.error(f"Storage {entry.storage} refused to delete {entry.key}")
                    return False
            elif backend is None and not entry.is_local:
                logger.error(f"Storage backend '{entry.storage}' is not configured")
                return False

            # Remote entries rebuilt by a refresh carry a key here, not a local path
            if os.path.isabs(entry.file_path):
                if os.path.isdir(entry.file_path):
                    shutil.rmtree(entry.file_path)
                elif os.path.isfile(entry.file_path):
                    os.remove(entry.file_path)
        except Exception:
            logger.exception(f"Failed to delete backup {backup_id}")
            return False

        self.catalog.remove(backup_id)
        logger.info(f"Deleted backup {backup_id} ({entry.storage}:{entry.key})")
        return True

    def storage_usage(self) -> Dict:
        return self.catalog.usage()

    # Retention

    def apply_retention(self, backup_type: Optional[str] = None, dry_run: bool = False) -> RetentionReport:
        return self.retention.apply(backup_type, dry_run=dry_run)
