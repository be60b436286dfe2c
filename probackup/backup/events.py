"""
Backup lifecycle notifications.
"""

import logging
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable, Optional

from .models import BackupOutcome, BackupRequest


logger = logging.getLogger(__name__)

PRE_BACKUP = 'backup.pre_backup'
POST_BACKUP = 'backup.post_backup'
BACKUP_FAILED = 'backup.failed'
PRE_RESTORE = 'backup.pre_restore'
POST_RESTORE = 'backup.post_restore'
RESTORE_FAILED = 'backup.restore_failed'

EVENTS = (PRE_BACKUP, POST_BACKUP, BACKUP_FAILED, PRE_RESTORE, POST_RESTORE, RESTORE_FAILED)


@dataclass
class BackupEvent:
    """Payload attached to every notification."""
    name: str
    request: Optional[BackupRequest] = None
    outcome: Optional[BackupOutcome] = None
    backup_id: Optional[str] = None
    error: Optional[str] = None


class EventSink:
    """
    Fire-and-forget dispatcher for backup events.

    A listener that raises is logged and skipped; it never interrupts the
    backup or restore that emitted the event.
    """

    def __init__(self):
        self._listeners = defaultdict(list)

    def subscribe(self, name: str, listener: Callable[[BackupEvent], None]):
        if name not in EVENTS and name != '*':
            raise ValueError(f"Unknown event: {name}")
        self._listeners[name].append(listener)

    def dispatch(self, event: BackupEvent):
        for listener in self._listeners.get(event.name, []) + self._listeners.get('*', []):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Listener for {event.name} failed: {e}")


def log_listener(event: BackupEvent):
    """Default listener: write each event to the log."""
    if event.name in (BACKUP_FAILED, RESTORE_FAILED):
        logger.warning(f"{event.name}: {event.error or 'unknown error'}")
    else:
        logger.info(f"{event.name}" + (f" (backup {event.backup_id})" if event.backup_id else ''))
