"""
Flask CLI commands for creating, listing, restoring and purging backups.

Registered on the app as:
- backup:create
- backup:list
- backup:restore
- pro:backup:purge
"""

import csv
import io
import json
import traceback

import click
from flask.cli import with_appcontext

from probackup import get_manager
from probackup.backup.manager import BackupNotFound
from probackup.backup.models import BackupRequest, RestoreOptions


PURGE_TYPES = ('database', 'filesystem', 'all')


def format_file_size(size) -> str:
    """Render a byte count as B, KB, MB, GB or TB."""
    size = float(size or 0)
    for unit in ('B', 'KB', 'MB', 'GB'):
        if size < 1024:
            return f"{size:.2f} {unit}"
        size /= 1024
    return f"{size:.2f} TB"


def _fail(message: str, verbose: bool = False):
    click.secho(f"Error: {message}", fg='red', err=True)
    if verbose:
        click.echo(traceback.format_exc(), err=True)


@click.command('backup:create')
@click.option('--type', '-t', 'backup_type', default='database', show_default=True, help='Backup type')
@click.option('--name', default='backup', show_default=True, help='Logical backup name')
@click.option('--storage', '-s', default=None, help='Storage backend (default: DEFAULT_STORAGE)')
@click.option('--compression', '-c', type=click.Choice(['gzip', 'zip']), default=None, help='Compression codec')
@click.option('--output-path', '-o', default=None, help='Output directory')
@click.option('--path', '-p', 'paths', multiple=True, help='Path to back up (repeatable)')
@click.option('--exclude', '-e', 'exclusions', multiple=True, help='Table or path glob to exclude (repeatable)')
@click.option('--connection', default=None, help='Database connection name')
@click.option('--verbose', '-v', is_flag=True, help='Show tracebacks of unexpected errors')
@with_appcontext
def create_command(backup_type, name, storage, compression, output_path, paths, exclusions, connection, verbose):
    """Create a backup."""
    options = {'paths': list(paths)} if paths else {}
    request = BackupRequest(
        type=backup_type,
        name=name,
        storage=storage,
        compression=compression,
        output_path=output_path,
        options=options,
        exclusions=list(exclusions),
        connection_name=connection,
    )

    click.echo(f"Creating {backup_type} backup '{name}'...")
    try:
        outcome = get_manager().backup(request)
    except Exception as e:
        _fail(str(e), verbose)
        raise SystemExit(1)

    if not outcome.success:
        _fail(outcome.error or 'Backup failed')
        raise SystemExit(1)

    click.secho('Backup created successfully.', fg='green')
    click.echo(f"  ID:       {outcome.metadata.get('backup_id', '-')}")
    click.echo(f"  File:     {outcome.file_path}")
    click.echo(f"  Size:     {format_file_size(outcome.file_size)}")
    click.echo(f"  Duration: {outcome.duration or 0:.2f}s")
    if outcome.metadata.get('compression'):
        click.echo(f"  Compression: {outcome.metadata['compression']}")
    if outcome.metadata.get('remote_key'):
        click.echo(f"  Stored in {outcome.metadata['storage']} as {outcome.metadata['remote_key']}")


@click.command('backup:list')
@click.option('--type', '-t', 'backup_type', default=None, help='Filter by backup type')
@click.option('--storage', '-s', default=None, help='Filter by storage backend')
@click.option('--format', '-f', 'output_format', type=click.Choice(['table', 'json', 'csv']),
              default='table', show_default=True)
@with_appcontext
def list_command(backup_type, storage, output_format):
    """List known backups."""
    manager = get_manager()
    manager.refresh_catalog()
    entries = manager.list_backups(backup_type, storage)

    if output_format == 'json':
        click.echo(json.dumps([entry.to_dict() for entry in entries], indent=2))
        return

    if output_format == 'csv':
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator='\n')
        writer.writerow(['ID', 'Type', 'Name', 'Size', 'Created', 'Storage'])
        for entry in entries:
            writer.writerow([
                entry.id, entry.type, entry.name, entry.file_size,
                entry.created_at.strftime('%Y-%m-%d %H:%M:%S'), entry.storage,
            ])
        click.echo(buffer.getvalue(), nl=False)
        return

    if not entries:
        click.echo('No backups found.')
        return

    rows = [
        (entry.id, entry.type, entry.name, format_file_size(entry.file_size),
         entry.created_at.strftime('%Y-%m-%d %H:%M:%S'), entry.storage)
        for entry in entries
    ]
    headers = ('ID', 'Type', 'Name', 'Size', 'Created', 'Storage')
    widths = [max(len(str(row[i])) for row in rows + [headers]) for i in range(len(headers))]
    line = '  '.join('{:<%d}' % w for w in widths)

    click.echo(line.format(*headers))
    click.echo('  '.join('-' * w for w in widths))
    for row in rows:
        click.echo(line.format(*row))

    usage = manager.storage_usage()
    click.echo('')
    click.echo('Storage usage:')
    for usage_type, size in sorted(usage['by_type'].items()):
        click.echo(f"  {usage_type:<12} {format_file_size(size)}")
    click.echo(f"  {'total':<12} {format_file_size(usage['total'])}")


@click.command('backup:restore')
@click.argument('backup_id')
@click.option('--force', '-f', is_flag=True, help='Skip confirmation')
@click.option('--single-user/--no-single-user', default=True, show_default=True,
              help='SQL Server: restore in single-user mode')
@click.option('--recovery', type=click.Choice(['recovery', 'norecovery']), default='recovery',
              show_default=True, help='SQL Server: recovery mode')
@click.option('--backup-existing/--no-backup-existing', default=True, show_default=True,
              help='SQLite: keep a copy of the current database file')
@click.option('--target-dir', default=None, help='Filesystem: directory to restore into')
@click.option('--connection', default=None, help='Database connection name')
@click.option('--verbose', '-v', is_flag=True, help='Show tracebacks of unexpected errors')
@with_appcontext
def restore_command(backup_id, force, single_user, recovery, backup_existing, target_dir, connection, verbose):
    """Restore a backup by id."""
    manager = get_manager()
    manager.refresh_catalog()

    if not force and not click.confirm(
        'Are you sure you want to restore this backup? This action cannot be undone!'
    ):
        click.echo('Restore cancelled.')
        return

    options = RestoreOptions(
        force=force,
        single_user=single_user,
        recovery=recovery,
        backup_existing=backup_existing,
        target_dir=target_dir,
        connection_name=connection,
    )

    try:
        restored = manager.restore(backup_id, options)
    except BackupNotFound as e:
        _fail(str(e))
        raise SystemExit(1)
    except Exception as e:
        _fail(str(e), verbose)
        raise SystemExit(1)

    if not restored:
        _fail(f"Restore of backup {backup_id} failed")
        raise SystemExit(1)

    click.secho(f"Backup {backup_id} restored successfully.", fg='green')


@click.command('pro:backup:purge')
@click.option('--type', '-t', 'backup_type', default='all', show_default=True,
              help='database, filesystem or all')
@click.option('--dry-run', is_flag=True, help='Only show what would be deleted')
@with_appcontext
def purge_command(backup_type, dry_run):
    """Delete backups older than the retention period."""
    if backup_type not in PURGE_TYPES:
        _fail(f"Invalid type '{backup_type}'. Valid options: {', '.join(PURGE_TYPES)}")
        raise SystemExit(2)

    manager = get_manager()
    manager.refresh_catalog()

    report = manager.apply_retention(None if backup_type == 'all' else backup_type, dry_run=dry_run)
    for message in report.logs:
        click.echo(message)

    if dry_run:
        click.echo(f"Dry run: {report.would_delete} backup(s) would be deleted.")
    else:
        click.echo(f"Deleted {report.deleted} backup(s).")

    if report.errors:
        for error in report.errors:
            _fail(error)
        raise SystemExit(1)


def register_commands(app):
    """Attach the backup commands to the app's CLI."""
    for command in (create_command, list_command, restore_command, purge_command):
        app.cli.add_command(command)
