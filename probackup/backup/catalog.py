"""
In-memory index of known backups.

The catalog is a cache over storage backend listings. It is only rebuilt
when refresh() is called; reads never trigger a refresh.
"""

import logging
import os
import threading
from typing import Dict, List, Mapping, Optional

from .models import CatalogEntry, ListingKind, make_backup_id
from .storage import Listing, StorageBackend, name_from_filename


logger = logging.getLogger(__name__)


def entry_from_listing(listing: Listing, backend_name: str) -> Optional[CatalogEntry]:
    """Convert either listing shape into a catalog entry."""
    kind = getattr(listing, 'kind', None)

    if kind == ListingKind.LOCAL:
        return CatalogEntry(
            id=listing.id,
            type=listing.type,
            name=listing.name,
            file_path=listing.file_path,
            file_size=listing.file_size,
            created_at=listing.created_at,
            storage=listing.storage,
            key=listing.path,
        )

    if kind == ListingKind.REMOTE:
        key = listing.path
        return CatalogEntry(
            id=make_backup_id(backend_name, key),
            type=key.split('/', 1)[0] if '/' in key else 'custom',
            name=name_from_filename(key.rsplit('/', 1)[-1]),
            file_path=key,
            file_size=listing.size,
            created_at=listing.modified,
            storage=backend_name,
            key=key,
        )

    return None


class Catalog:
    """
    Mapping of backup id to CatalogEntry.

    Mutations are serialized with a re-entrant lock since scheduled backups
    run on a worker thread.
    """

    def __init__(self):
        self._entries: Dict[str, CatalogEntry] = {}
        self._lock = threading.RLock()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, backup_id):
        return backup_id in self._entries

    def add(self, entry: CatalogEntry):
        with self._lock:
            self._entries[entry.id] = entry

    def remove(self, backup_id: str) -> Optional[CatalogEntry]:
        with self._lock:
            return self._entries.pop(backup_id, None)

    def remove_key(self, storage: str, key: str) -> Optional[CatalogEntry]:
        return self.remove(make_backup_id(storage, key))

    def get(self, backup_id: str) -> Optional[CatalogEntry]:
        return self._entries.get(backup_id)

    def list(self, backup_type: Optional[str] = None, storage: Optional[str] = None) -> List[CatalogEntry]:
        with self._lock:
            entries = list(self._entries.values())
        if backup_type:
            entries = [e for e in entries if e.type == backup_type]
        if storage:
            entries = [e for e in entries if e.storage == storage]
        return sorted(entries, key=lambda e: e.created_at, reverse=True)

    def last(self, backup_type: Optional[str] = None) -> Optional[CatalogEntry]:
        entries = self.list(backup_type)
        return entries[0] if entries else None

    def usage(self) -> Dict:
        """Sum of sizes overall and grouped by type."""
        by_type: Dict[str, int] = {}
        total = 0
        for entry in self.list():
            size = entry.file_size or 0
            total += size
            by_type[entry.type] = by_type.get(entry.type, 0) + size
        return {'total': total, 'by_type': by_type}

    def refresh(self, backends: Mapping[str, StorageBackend]) -> int:
        """
        Rebuild the catalog from every backend's listing.

        Unkeyed entries (artifacts written outside every backend) are kept
        for as long as their file still exists.

        Returns:
            Number of entries in the rebuilt catalog
        """
        entries: Dict[str, CatalogEntry] = {}
        for name, backend in backends.items():
            for listing in backend.list(''):
                entry = entry_from_listing(listing, name)
                if entry is not None:
                    entries[entry.id] = entry

        with self._lock:
            for entry in self._entries.values():
                if not entry.key and os.path.exists(entry.file_path):
                    entries.setdefault(entry.id, entry)
            self._entries = entries

        logger.info(f"Catalog refreshed: {len(entries)} backup(s) across {len(backends)} backend(s)")
        return len(entries)
