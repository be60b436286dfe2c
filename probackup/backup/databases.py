"""
Database source adapters.

Supports:
- MySQLAdapter: mysqldump / mysql
- PostgreSQLAdapter: pg_dump / psql / pg_restore
- SQLiteAdapter: sqlite3 online backup API
- SqlServerAdapter: T-SQL BACKUP DATABASE / RESTORE DATABASE over SQLAlchemy

Each adapter is bound to one ConnectionInfo. Dump files are named
{database}_{name}_{YYYYmmdd_HHMMSS}.{ext} inside the request's output path.
"""

import logging
import os
import shutil
import sqlite3
import time
from typing import Dict, List, Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from .adapters import ConnectionInfo, SourceAdapter, SourceError
from .models import (
    BackupOutcome,
    BackupRequest,
    MySQLOptions,
    PostgreSQLOptions,
    RestoreOptions,
    utcnow,
)
from .process import DEFAULT_TIMEOUT, CommandError, run_command


logger = logging.getLogger(__name__)


class DatabaseAdapter(SourceAdapter):
    """Common behavior for connection-bound database adapters."""

    platform = 'database'
    extension = 'sql'
    requires_connection = True

    def __init__(self, connection: ConnectionInfo, timeout: Optional[float] = DEFAULT_TIMEOUT):
        self.connection = connection
        self.timeout = timeout

    def get_connection(self) -> ConnectionInfo:
        return self.connection

    @property
    def url(self):
        return self.connection.sa_url

    def validate(self, request: BackupRequest) -> List[str]:
        errors = []
        if not request.output_path:
            errors.append('Output path is required')
        if not self.connection.database:
            errors.append(f"Connection '{self.connection.name}' does not name a database")
        if self.connection.platform != self.platform:
            errors.append(
                f"Connection '{self.connection.name}' is a {self.connection.platform} "
                f"connection, expected {self.platform}"
            )
        return errors + self._validate_options(request)

    def _validate_options(self, request: BackupRequest) -> List[str]:
        return []

    def _artifact_path(self, request: BackupRequest, extension: Optional[str] = None) -> str:
        database = os.path.basename(self.connection.database or 'database')
        database = os.path.splitext(database)[0] if self.platform == 'sqlite' else database
        timestamp = utcnow().strftime('%Y%m%d_%H%M%S')
        filename = f"{database}_{request.name}_{timestamp}.{extension or self.extension}"
        return os.path.join(request.output_path, filename)

    def backup(self, request: BackupRequest) -> BackupOutcome:
        started = time.monotonic()
        created_at = utcnow()
        artifact_path = self._artifact_path(request, self._extension_for(request))

        logger.info(f"Backing up {self.platform} database '{self.connection.database}' to {artifact_path}")
        try:
            self._dump(request, artifact_path)
        except (CommandError, SourceError, SQLAlchemyError, sqlite3.Error, OSError) as e:
            if os.path.exists(artifact_path):
                os.remove(artifact_path)
            return self._fail(f"{self.platform} backup failed: {e}", started)

        file_size = os.path.getsize(artifact_path) if os.path.exists(artifact_path) else None
        return BackupOutcome(
            success=True,
            file_path=artifact_path,
            file_size=file_size,
            created_at=created_at,
            duration=time.monotonic() - started,
            metadata={
                'database': self.connection.database,
                'connection': self.connection.name,
                'platform': self.platform,
            },
        )

    def _extension_for(self, request: BackupRequest) -> str:
        return self.extension

    def _dump(self, request: BackupRequest, artifact_path: str):
        raise NotImplementedError

    def restore(self, artifact_path: str, options: RestoreOptions) -> bool:
        if not os.path.exists(artifact_path):
            logger.error(f"Artifact not found: {artifact_path}")
            return False
        try:
            self._load(artifact_path, options)
        except (CommandError, SourceError, SQLAlchemyError, sqlite3.Error, OSError) as e:
            logger.error(f"{self.platform} restore of '{self.connection.database}' failed: {e}")
            return False

        logger.info(f"Restored {self.platform} database '{self.connection.database}' from {artifact_path}")
        return True

    def _load(self, artifact_path: str, options: RestoreOptions):
        raise NotImplementedError


class MySQLAdapter(DatabaseAdapter):
    """Backs up MySQL/MariaDB databases with mysqldump."""

    platform = 'mysql'
    extension = 'sql'
    supported_types = ('database', 'mysql')

    def _connection_args(self) -> List[str]:
        args = [f"--host={self.url.host or 'localhost'}", f"--port={self.url.port or 3306}"]
        if self.url.username:
            args.append(f"--user={self.url.username}")
        return args

    def _env(self) -> Dict[str, str]:
        return {'MYSQL_PWD': self.url.password} if self.url.password else {}

    def _validate_options(self, request: BackupRequest) -> List[str]:
        try:
            MySQLOptions.from_mapping(request.options)
        except (TypeError, ValueError) as e:
            return [f"Invalid MySQL options: {e}"]
        return []

    def build_dump_command(self, request: BackupRequest) -> List[str]:
        options = MySQLOptions.from_mapping(request.options)
        cmd = ['mysqldump'] + self._connection_args()

        if options.single_transaction:
            cmd.append('--single-transaction')
        if options.add_drop_table:
            cmd.append('--add-drop-table')
        if options.routines:
            cmd.append('--routines')
        if options.triggers:
            cmd.append('--triggers')
        if options.no_data:
            cmd.append('--no-data')

        for table in request.exclusions:
            cmd.append(f"--ignore-table={self.connection.database}.{table}")

        cmd.append(self.connection.database)
        return cmd

    def _dump(self, request: BackupRequest, artifact_path: str):
        run_command(
            self.build_dump_command(request),
            env=self._env(),
            timeout=self.timeout,
            stdout_path=artifact_path,
        )

    def build_restore_command(self, options: RestoreOptions) -> List[str]:
        cmd = ['mysql'] + self._connection_args()
        if options.force:
            cmd.append('--force')
        cmd.append(self.connection.database)
        return cmd

    def _load(self, artifact_path: str, options: RestoreOptions):
        run_command(
            self.build_restore_command(options),
            env=self._env(),
            timeout=self.timeout,
            stdin_path=artifact_path,
        )


class PostgreSQLAdapter(DatabaseAdapter):
    """Backs up PostgreSQL databases with pg_dump."""

    platform = 'postgresql'
    extension = 'sql'
    supported_types = ('database', 'postgresql', 'pgsql')

    def _connection_args(self) -> List[str]:
        args = [f"--host={self.url.host or 'localhost'}", f"--port={self.url.port or 5432}"]
        if self.url.username:
            args.append(f"--username={self.url.username}")
        return args

    def _env(self) -> Dict[str, str]:
        return {'PGPASSWORD': self.url.password} if self.url.password else {}

    def _validate_options(self, request: BackupRequest) -> List[str]:
        try:
            options = PostgreSQLOptions.from_mapping(request.options)
        except (TypeError, ValueError) as e:
            return [f"Invalid PostgreSQL options: {e}"]
        if options.schema_only and options.data_only:
            return ['schema_only and data_only cannot both be set']
        return []

    def _extension_for(self, request: BackupRequest) -> str:
        options = PostgreSQLOptions.from_mapping(request.options)
        return 'dump' if options.format == 'custom' else 'sql'

    def build_dump_command(self, request: BackupRequest, artifact_path: str) -> List[str]:
        options = PostgreSQLOptions.from_mapping(request.options)
        cmd = ['pg_dump'] + self._connection_args()
        cmd.append(f"--format={options.format}")

        if options.schema_only:
            cmd.append('--schema-only')
        if options.data_only:
            cmd.append('--data-only')
        if options.clean:
            cmd.append('--clean')
        if options.create:
            cmd.append('--create')
        if options.verbose:
            cmd.append('--verbose')

        for table in request.exclusions:
            cmd.append(f"--exclude-table={table}")

        cmd.append(f"--file={artifact_path}")
        cmd.append(self.connection.database)
        return cmd

    def _dump(self, request: BackupRequest, artifact_path: str):
        run_command(
            self.build_dump_command(request, artifact_path),
            env=self._env(),
            timeout=self.timeout,
        )

    def build_restore_command(self, artifact_path: str, options: RestoreOptions) -> List[str]:
        if artifact_path.endswith('.dump'):
            cmd = ['pg_restore'] + self._connection_args()
            cmd.append(f"--dbname={self.connection.database}")
            if options.clean:
                cmd.append('--clean')
            if options.create:
                cmd.append('--create')
            if options.single_transaction:
                cmd.append('--single-transaction')
            if options.no_owner:
                cmd.append('--no-owner')
            cmd.append(artifact_path)
            return cmd

        cmd = ['psql'] + self._connection_args()
        cmd.append(f"--dbname={self.connection.database}")
        if options.single_transaction:
            cmd.append('--single-transaction')
        return cmd

    def _load(self, artifact_path: str, options: RestoreOptions):
        cmd = self.build_restore_command(artifact_path, options)
        stdin_path = None if cmd[0] == 'pg_restore' else artifact_path
        run_command(cmd, env=self._env(), timeout=self.timeout, stdin_path=stdin_path)


class SQLiteAdapter(DatabaseAdapter):
    """Copies SQLite database files through the online backup API."""

    platform = 'sqlite'
    extension = 'sqlite'
    supported_types = ('database', 'sqlite')

    def _validate_options(self, request: BackupRequest) -> List[str]:
        database = self.connection.database
        if database and database != ':memory:' and not os.path.isfile(database):
            return [f"SQLite database file not found: {database}"]
        if database == ':memory:':
            return ['In-memory SQLite databases cannot be backed up']
        return []

    def _dump(self, request: BackupRequest, artifact_path: str):
        if request.exclusions:
            logger.warning('Table exclusions are ignored for SQLite backups')

        source = sqlite3.connect(self.connection.database)
        try:
            destination = sqlite3.connect(artifact_path)
            try:
                source.backup(destination)
            finally:
                destination.close()
        finally:
            source.close()

    def _load(self, artifact_path: str, options: RestoreOptions):
        database = self.connection.database
        if options.backup_existing and os.path.exists(database):
            saved = f"{database}.bak.{utcnow().strftime('%Y%m%d%H%M%S')}"
            shutil.copy2(database, saved)
            logger.info(f"Saved existing database to {saved}")

        os.makedirs(os.path.dirname(os.path.abspath(database)), exist_ok=True)
        shutil.copy2(artifact_path, database)


def _quote_name(name: str) -> str:
    return '[' + name.replace(']', ']]') + ']'


def _quote_string(value: str) -> str:
    return "N'" + value.replace("'", "''") + "'"


class SqlServerAdapter(DatabaseAdapter):
    """
    Backs up SQL Server databases with T-SQL.

    BACKUP/RESTORE run on the server, so the output path must be reachable
    from the SQL Server host as well as from this process.
    """

    platform = 'sqlserver'
    extension = 'bak'
    supported_types = ('database', 'sqlserver', 'mssql')

    def _engine(self):
        return create_engine(self.url.set(database='master'))

    def _execute(self, statements: List[str]):
        engine = self._engine()
        try:
            with engine.connect().execution_options(isolation_level='AUTOCOMMIT') as conn:
                for statement in statements:
                    logger.debug(f"Executing: {statement}")
                    conn.execute(text(statement))
        finally:
            engine.dispose()

    def build_backup_statement(self, artifact_path: str) -> str:
        database = self.connection.database
        return (
            f"BACKUP DATABASE {_quote_name(database)} TO DISK = {_quote_string(artifact_path)} "
            f"WITH NOFORMAT, NOINIT, NAME = {_quote_string(database + '-Full Database Backup')}, "
            f"SKIP, NOREWIND, NOUNLOAD, STATS = 10"
        )

    def build_restore_statement(self, artifact_path: str, options: RestoreOptions) -> str:
        recovery = 'NORECOVERY' if str(options.recovery).lower() == 'norecovery' else 'RECOVERY'
        return (
            f"RESTORE DATABASE {_quote_name(self.connection.database)} "
            f"FROM DISK = {_quote_string(artifact_path)} "
            f"WITH FILE = 1, NOUNLOAD, REPLACE, STATS = 5, {recovery}"
        )

    def _dump(self, request: BackupRequest, artifact_path: str):
        self._execute([self.build_backup_statement(os.path.abspath(artifact_path))])

    def _load(self, artifact_path: str, options: RestoreOptions):
        database = _quote_name(self.connection.database)
        statements = []
        if options.single_user:
            statements.append(f"ALTER DATABASE {database} SET SINGLE_USER WITH ROLLBACK IMMEDIATE")
        statements.append(self.build_restore_statement(os.path.abspath(artifact_path), options))

        try:
            self._execute(statements)
        finally:
            if options.single_user:
                try:
                    self._execute([f"ALTER DATABASE {database} SET MULTI_USER"])
                except SQLAlchemyError as e:
                    logger.error(f"Failed to return {database} to multi-user mode: {e}")


_ADAPTERS = {
    'mysql': MySQLAdapter,
    'postgresql': PostgreSQLAdapter,
    'sqlite': SQLiteAdapter,
    'sqlserver': SqlServerAdapter,
}


def create_database_adapter(connection: ConnectionInfo, timeout: Optional[float] = DEFAULT_TIMEOUT) -> DatabaseAdapter:
    """
    Build the adapter matching a connection's platform.

    Raises:
        SourceError: If the platform has no adapter
    """
    adapter_class = _ADAPTERS.get(connection.platform)
    if adapter_class is None:
        raise SourceError(f"No database adapter for platform: {connection.platform}")
    return adapter_class(connection, timeout=timeout)
