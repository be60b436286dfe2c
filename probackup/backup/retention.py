"""
Retention policy enforcement for backups.

Deletes backups older than the configured number of days for each backup
type. Every registered storage backend is scanned for every type, whichever
backend actually holds that type's backups. Platform types (mysql, files, ...)
fall under their logical type: they share its retention setting, and their
own directories are scanned along with it.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import List, Mapping, Optional

from .catalog import Catalog
from .models import BackupType, ListingKind, logical_type, type_aliases, utcnow
from .storage import StorageBackend


logger = logging.getLogger(__name__)

RETENTION_TYPES = (BackupType.DATABASE.value, BackupType.FILESYSTEM.value)


@dataclass
class RetentionReport:
    """Summary of one retention run."""
    dry_run: bool = False
    examined: int = 0
    deleted: int = 0
    would_delete: int = 0
    errors: List[str] = field(default_factory=list)
    logs: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self):
        return {
            'dry_run': self.dry_run,
            'examined': self.examined,
            'deleted': self.deleted,
            'would_delete': self.would_delete,
            'errors': list(self.errors),
        }


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class RetentionManager:
    """
    Applies the time-based retention policy across storage backends.

    A retention of zero days or less (or no setting at all) disables
    retention for that type.
    """

    def __init__(self, backends: Mapping[str, StorageBackend], retention_days: Mapping[str, int],
                 catalog: Optional[Catalog] = None):
        """
        Initialize retention manager.

        Args:
            backends: Storage backends by name
            retention_days: Days to keep backups, by backup type
            catalog: Catalog to drop deleted entries from
        """
        self.backends = backends
        self.retention_days = retention_days
        self.catalog = catalog

    def apply(self, backup_type: Optional[str] = None, dry_run: bool = False) -> RetentionReport:
        """
        Delete backups older than the retention period.

        Args:
            backup_type: Only apply to this type (default: database, filesystem and
                every type with a retention setting)
            dry_run: Only report what would be deleted

        Returns:
            RetentionReport with counts and errors
        """
        report = RetentionReport(dry_run=dry_run)
        types = [logical_type(backup_type)] if backup_type else self._sweep_types()

        for current_type in types:
            days = self._days_for(current_type)
            if days <= 0:
                self._log(report, f"Retention disabled for {current_type}, skipping")
                continue

            cutoff = utcnow() - timedelta(days=days)
            self._log(report, f"Applying {days} day retention to {current_type} (cutoff {cutoff.isoformat()})")

            for backend_name, backend in self.backends.items():
                self._apply_backend(report, current_type, cutoff, backend_name, backend, dry_run)

        self._log(
            report,
            f"Retention complete. Examined: {report.examined}, "
            f"deleted: {report.deleted}, would delete: {report.would_delete}, "
            f"errors: {len(report.errors)}"
        )
        return report

    def _sweep_types(self) -> List[str]:
        types = list(RETENTION_TYPES)
        for configured in self.retention_days:
            current = logical_type(configured)
            if current not in types:
                types.append(current)
        return types

    def _days_for(self, backup_type: str) -> int:
        try:
            return int(self.retention_days.get(backup_type) or 0)
        except (TypeError, ValueError):
            logger.warning(f"Invalid retention setting for {backup_type}: {self.retention_days.get(backup_type)!r}")
            return 0

    def _apply_backend(self, report: RetentionReport, backup_type: str, cutoff: datetime,
                       backend_name: str, backend: StorageBackend, dry_run: bool):
        entries = []
        for prefix in [backup_type] + type_aliases(backup_type):
            entries.extend(backend.list(f"{prefix}/"))

        for entry in entries:
            kind = getattr(entry, 'kind', None)
            if kind == ListingKind.LOCAL:
                timestamp = entry.created_at
            elif kind == ListingKind.REMOTE:
                timestamp = entry.modified
            else:
                continue

            report.examined += 1
            if not _as_utc(timestamp) < cutoff:
                continue

            if dry_run:
                report.would_delete += 1
                self._log(report, f"[dry run] Would delete {backend_name}:{entry.path}")
                continue

            try:
                deleted = backend.delete(entry.path)
            except Exception as e:
                deleted = False
                logger.exception(f"Error deleting {backend_name}:{entry.path}")
                report.errors.append(f"Failed to delete {backend_name}:{entry.path}: {e}")
            else:
                if not deleted:
                    report.errors.append(f"Failed to delete {backend_name}:{entry.path}")

            if deleted:
                report.deleted += 1
                self._log(report, f"Deleted {backend_name}:{entry.path}")
                if self.catalog is not None:
                    self.catalog.remove_key(backend_name, entry.path)
            else:
                self._log(report, f"Could not delete {backend_name}:{entry.path}")

    def _log(self, report: RetentionReport, message: str):
        report.logs.append(message)
        logger.info(message)
