"""
Unit tests for the backup catalog and event sink
(probackup/backup/catalog.py, probackup/backup/events.py).
"""

import logging
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from probackup.backup.catalog import Catalog, entry_from_listing
from probackup.backup.events import (
    BACKUP_FAILED,
    POST_BACKUP,
    PRE_BACKUP,
    BackupEvent,
    EventSink,
    log_listener
)
from probackup.backup.models import CatalogEntry, LocalListing, RemoteListing, make_backup_id


MODIFIED = datetime(2024, 1, 15, 12, 0, tzinfo=timezone.utc)


class TestEntryFromListing:
    """Test conversion of both listing shapes."""

    def test_remote_listing(self):
        listing = RemoteListing('database/shop_nightly_20240115_120000.sql.gz', 42, MODIFIED)

        entry = entry_from_listing(listing, 's3')

        assert entry.id == make_backup_id('s3', listing.path)
        assert entry.type == 'database'
        assert entry.name == 'shop_nightly'
        assert entry.file_path == listing.path
        assert entry.file_size == 42
        assert entry.created_at == MODIFIED
        assert entry.storage == 's3'
        assert entry.key == listing.path

    def test_remote_listing_at_root(self):
        entry = entry_from_listing(RemoteListing('loose.zip', 1, MODIFIED), 'sftp')

        assert entry.type == 'custom'
        assert entry.name == 'loose'

    def test_local_listing_keeps_its_fields(self):
        listing = LocalListing('abc', 'filesystem', 'docs', '/b/filesystem/docs.zip', 7, MODIFIED,
                               'local', 'filesystem/docs.zip')

        entry = entry_from_listing(listing, 'local')

        assert entry.id == 'abc'
        assert entry.file_path == '/b/filesystem/docs.zip'
        assert entry.key == 'filesystem/docs.zip'

    def test_unknown_shape(self):
        assert entry_from_listing(object(), 'x') is None


class TestCatalog:
    def test_refresh_replaces_entries(self):
        """Test refresh rebuilds from listings and drops stale entries."""
        catalog = Catalog()
        stale = entry_from_listing(RemoteListing('database/stale.sql', 1, MODIFIED), 's3')
        catalog.add(stale)
        first, second = MagicMock(), MagicMock()
        first.list.return_value = [RemoteListing('database/a.sql', 1, MODIFIED)]
        second.list.return_value = [RemoteListing('database/a.sql', 1, MODIFIED)]

        count = catalog.refresh({'s3': first, 'sftp': second})

        assert count == 2
        assert stale.id not in catalog
        first.list.assert_called_once_with('')
        assert {e.storage for e in catalog.list()} == {'s3', 'sftp'}

    def test_refresh_keeps_unkeyed_entries_while_file_exists(self, tmp_path):
        """Test artifacts written outside every backend survive a refresh until removed."""
        artifact = tmp_path / 'adhoc.sql'
        artifact.write_text('x')
        catalog = Catalog()
        unkeyed = CatalogEntry(
            id=make_backup_id('local', str(artifact)), type='database', name='adhoc',
            file_path=str(artifact), file_size=1, created_at=MODIFIED, storage='local', key='',
        )
        catalog.add(unkeyed)
        backend = MagicMock()
        backend.list.return_value = []

        assert catalog.refresh({'local': backend}) == 1
        assert catalog.get(unkeyed.id) is unkeyed

        artifact.unlink()
        assert catalog.refresh({'local': backend}) == 0

    def test_empty_catalog_reads(self):
        catalog = Catalog()

        assert catalog.list() == []
        assert catalog.last() is None
        assert catalog.usage() == {'total': 0, 'by_type': {}}

    def test_remove_key(self):
        catalog = Catalog()
        catalog.add(entry_from_listing(RemoteListing('database/a.sql', 1, MODIFIED), 's3'))

        removed = catalog.remove_key('s3', 'database/a.sql')

        assert removed.key == 'database/a.sql'
        assert len(catalog) == 0
        assert catalog.remove_key('s3', 'database/a.sql') is None


class TestEventSink:
    """Test notification dispatch."""

    def test_named_and_wildcard_listeners(self):
        sink = EventSink()
        named, wildcard = [], []
        sink.subscribe(POST_BACKUP, named.append)
        sink.subscribe('*', wildcard.append)

        sink.dispatch(BackupEvent(name=PRE_BACKUP))
        sink.dispatch(BackupEvent(name=POST_BACKUP, backup_id='abc'))

        assert [e.name for e in named] == [POST_BACKUP]
        assert [e.name for e in wildcard] == [PRE_BACKUP, POST_BACKUP]

    def test_unknown_event_rejected(self):
        with pytest.raises(ValueError):
            EventSink().subscribe('backup.exploded', print)

    def test_failing_listener_does_not_stop_others(self, caplog):
        sink = EventSink()
        received = []
        sink.subscribe(BACKUP_FAILED, MagicMock(side_effect=RuntimeError('listener bug')))
        sink.subscribe(BACKUP_FAILED, received.append)

        with caplog.at_level(logging.ERROR):
            sink.dispatch(BackupEvent(name=BACKUP_FAILED, error='disk full'))

        assert len(received) == 1
        assert 'listener bug' in caplog.text

    def test_log_listener(self, caplog):
        with caplog.at_level(logging.INFO):
            log_listener(BackupEvent(name=POST_BACKUP, backup_id='abc'))
            log_listener(BackupEvent(name=BACKUP_FAILED, error='disk full'))

        assert 'backup.post_backup (backup abc)' in caplog.text
        assert 'backup.failed: disk full' in caplog.text
