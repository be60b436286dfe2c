"""
Data model shared by the backup orchestration layer.

Covers:
- BackupRequest: what the caller wants backed up
- BackupOutcome: the result of one backup attempt
- CatalogEntry: an entry in the orchestrator's index of known backups
- LocalListing / RemoteListing: the two listing shapes storage backends return
- Typed option structs for each adapter family
"""

import hashlib
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


class BackupError(Exception):
    """Base class for backup orchestration errors."""
    pass


class BackupType(str, Enum):
    """Logical backup types understood by the orchestrator."""
    DATABASE = 'database'
    FILESYSTEM = 'filesystem'
    CUSTOM = 'custom'


# Platform-specific request types and the logical type their backups are filed under
TYPE_ALIASES = {
    'mysql': BackupType.DATABASE.value,
    'postgresql': BackupType.DATABASE.value,
    'pgsql': BackupType.DATABASE.value,
    'sqlite': BackupType.DATABASE.value,
    'sqlserver': BackupType.DATABASE.value,
    'mssql': BackupType.DATABASE.value,
    'files': BackupType.FILESYSTEM.value,
}


def logical_type(backup_type: str) -> str:
    """Map a platform-specific type (mysql, files, ...) to its logical type."""
    return TYPE_ALIASES.get(backup_type, backup_type)


def type_aliases(backup_type: str) -> List[str]:
    """Platform-specific types filed under a logical type."""
    return sorted(alias for alias, logical in TYPE_ALIASES.items() if logical == backup_type)


class ListingKind(str, Enum):
    """Discriminant for storage listing entries."""
    LOCAL = 'local'
    REMOTE = 'remote'


def utcnow() -> datetime:
    """Return the current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def make_backup_id(storage: str, key: str) -> str:
    """
    Derive a catalog id from the backend name and backend key.

    Ids are content-addressed so the same artifact gets the same id no
    matter whether it was just created or rediscovered by a refresh.

    Args:
        storage: Storage backend name
        key: Key of the artifact inside that backend

    Returns:
        16 character hex id
    """
    digest = hashlib.sha256(f"{storage}:{key}".encode('utf-8'))
    return digest.hexdigest()[:16]


@dataclass
class BackupRequest:
    """
    Configuration for a single backup run.

    `type` is either a BackupType value or a platform-specific string
    (mysql, postgresql, ...) that an adapter accepts. `options` is a free-form
    mapping that adapters turn into their typed option struct.
    """
    type: str
    name: str = 'backup'
    storage: Optional[str] = None
    compression: Optional[str] = None
    output_path: Optional[str] = None
    options: Dict[str, Any] = field(default_factory=dict)
    exclusions: List[str] = field(default_factory=list)
    connection_name: Optional[str] = None

    def __post_init__(self):
        if isinstance(self.type, BackupType):
            self.type = self.type.value


@dataclass
class BackupOutcome:
    """
    Result of one backup attempt.

    Built once by the adapter. The orchestrator only touches it through
    amend() to rewrite the artifact after compression or backfill duration.
    """
    success: bool
    file_path: Optional[str] = None
    file_size: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
    duration: Optional[float] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def failed(cls, error: str, duration: Optional[float] = None, **metadata) -> 'BackupOutcome':
        return cls(success=False, error=error, duration=duration, metadata=dict(metadata))

    def amend(self, file_path: Optional[str] = None, file_size: Optional[int] = None,
              duration: Optional[float] = None, metadata: Optional[Dict[str, Any]] = None):
        """Rewrite path/size, backfill duration and merge metadata."""
        if file_path is not None:
            self.file_path = file_path
        if file_size is not None:
            self.file_size = file_size
        if duration is not None and self.duration is None:
            self.duration = duration
        if metadata:
            self.metadata.update(metadata)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'file_path': self.file_path,
            'file_size': self.file_size,
            'created_at': self.created_at.isoformat(),
            'duration': self.duration,
            'error': self.error,
            'metadata': dict(self.metadata),
        }


@dataclass
class CatalogEntry:
    """A backup known to the orchestrator."""
    id: str
    type: str
    name: str
    file_path: str
    file_size: int
    created_at: datetime
    storage: str
    key: str
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_local(self) -> bool:
        return self.storage == 'local'

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'name': self.name,
            'file_path': self.file_path,
            'file_size': self.file_size,
            'created_at': self.created_at.isoformat(),
            'storage': self.storage,
            'key': self.key,
            'metadata': dict(self.metadata),
        }


@dataclass(frozen=True)
class LocalListing:
    """Listing entry returned by backends that know the backup's type and name."""
    id: str
    type: str
    name: str
    file_path: str
    file_size: int
    created_at: datetime
    storage: str
    path: str
    kind: ListingKind = field(default=ListingKind.LOCAL, init=False)


@dataclass(frozen=True)
class RemoteListing:
    """Listing entry returned by object stores: key, size and modification time only."""
    path: str
    size: int
    modified: datetime
    kind: ListingKind = field(default=ListingKind.REMOTE, init=False)


def _coerce_bool(value) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ('1', 'true', 'yes', 'on')
    return bool(value)


class _OptionsMixin:
    """Builds a typed option struct from a generic mapping, ignoring unknown keys."""

    @classmethod
    def from_mapping(cls, mapping: Optional[Dict[str, Any]] = None):
        mapping = mapping or {}
        kwargs = {}
        for f in fields(cls):
            if f.name not in mapping or mapping[f.name] is None:
                continue
            value = mapping[f.name]
            if f.type in (bool, 'bool'):
                value = _coerce_bool(value)
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass
class MySQLOptions(_OptionsMixin):
    single_transaction: bool = True
    add_drop_table: bool = True
    routines: bool = False
    triggers: bool = False
    no_data: bool = False


@dataclass
class PostgreSQLOptions(_OptionsMixin):
    format: str = 'plain'
    schema_only: bool = False
    data_only: bool = False
    clean: bool = False
    create: bool = True
    verbose: bool = False

    def __post_init__(self):
        if self.format not in ('plain', 'custom'):
            raise ValueError(f"Invalid pg_dump format: {self.format}. Valid options: ['plain', 'custom']")


@dataclass
class PathSpec:
    """A filesystem path to back up with its own exclusion globs."""
    path: str
    exclude: List[str] = field(default_factory=list)


@dataclass
class FilesystemOptions:
    paths: List[PathSpec] = field(default_factory=list)

    @classmethod
    def from_mapping(cls, mapping: Optional[Dict[str, Any]] = None) -> 'FilesystemOptions':
        """
        Build options from a mapping.

        `paths` may hold plain strings or {'path': ..., 'exclude': [...]} mappings;
        a single exclude glob may be given as a string.
        """
        mapping = mapping or {}
        raw_paths = mapping.get('paths') or []
        if isinstance(raw_paths, str):
            raw_paths = [raw_paths]

        paths = []
        for item in raw_paths:
            if isinstance(item, PathSpec):
                paths.append(item)
            elif isinstance(item, dict):
                if not item.get('path'):
                    continue
                exclude = item.get('exclude') or []
                if isinstance(exclude, str):
                    exclude = [exclude]
                paths.append(PathSpec(item['path'], list(exclude)))
            elif item:
                paths.append(PathSpec(str(item)))
        return cls(paths=paths)


@dataclass
class RestoreOptions(_OptionsMixin):
    force: bool = False
    single_user: bool = True
    recovery: str = 'recovery'
    backup_existing: bool = True
    target_dir: Optional[str] = None
    connection_name: Optional[str] = None
    clean: bool = False
    create: bool = False
    no_owner: bool = False
    single_transaction: bool = True
