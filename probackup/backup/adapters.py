"""
Source adapter contract and connection model.

A source adapter knows how to produce a backup artifact from a live source
and how to restore that source from an artifact. Database adapters are bound
to a connection; the orchestrator compares connections when resolving which
adapter handles a request.
"""

import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Optional

from sqlalchemy.engine import make_url

from .models import BackupOutcome, BackupRequest, RestoreOptions


class SourceError(Exception):
    """Raised when a source cannot be backed up or restored."""
    pass


_PLATFORMS = {
    'mysql': 'mysql',
    'mariadb': 'mysql',
    'pgsql': 'postgresql',
    'postgres': 'postgresql',
    'postgresql': 'postgresql',
    'sqlite': 'sqlite',
    'sqlsrv': 'sqlserver',
    'mssql': 'sqlserver',
    'sqlserver': 'sqlserver',
}


def resolve_platform(driver: Optional[str]) -> str:
    """
    Map a driver or SQLAlchemy backend name to a platform name.

    Returns one of mysql, postgresql, sqlite, sqlserver, or 'database' for
    anything unrecognized.
    """
    if not driver:
        return 'database'
    backend = driver.split('+', 1)[0].lower()
    return _PLATFORMS.get(backend, 'database')


@dataclass(frozen=True)
class ConnectionInfo:
    """A named database connection described by a SQLAlchemy URL."""
    name: str
    url: str

    @property
    def sa_url(self):
        return make_url(self.url)

    @property
    def platform(self) -> str:
        return resolve_platform(self.sa_url.get_backend_name())

    @property
    def database(self) -> Optional[str]:
        return self.sa_url.database

    def __repr__(self):
        return f"ConnectionInfo(name={self.name!r}, url={self.sa_url!r})"


class SourceAdapter(ABC):
    """Strategy implementing backup and restore for one kind of source."""

    #: Type strings this adapter accepts
    supported_types: Iterable[str] = ()

    #: Whether the adapter needs a live connection to operate
    requires_connection = False

    def supports(self, backup_type: str) -> bool:
        return backup_type in self.supported_types

    @abstractmethod
    def validate(self, request: BackupRequest) -> List[str]:
        """Return a list of configuration errors (empty when valid)."""

    @abstractmethod
    def backup(self, request: BackupRequest) -> BackupOutcome:
        """Produce a backup artifact for the request."""

    @abstractmethod
    def restore(self, artifact_path: str, options: RestoreOptions) -> bool:
        """Restore the source from an artifact."""

    def get_connection(self) -> Optional[ConnectionInfo]:
        return None

    def _fail(self, message: str, started: float) -> BackupOutcome:
        return BackupOutcome.failed(message, duration=time.monotonic() - started)
