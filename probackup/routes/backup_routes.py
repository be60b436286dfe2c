"""
Backup catalog routes - read-only JSON view of known backups.
"""

from flask import Blueprint, jsonify, request

from probackup import get_manager


bp = Blueprint('backups', __name__, url_prefix='/api/backups')


@bp.route('/', methods=['GET'])
def list_backups():
    """
    List backups in the catalog.

    Query params:
        - type: Filter by backup type
        - storage: Filter by storage backend
        - refresh: Rebuild the catalog from storage first (true/false)

    Returns:
        JSON with backup records and count
    """
    manager = get_manager()
    if request.args.get('refresh', 'false').lower() == 'true':
        manager.refresh_catalog()

    entries = manager.list_backups(request.args.get('type'), request.args.get('storage'))
    return jsonify({
        'backups': [entry.to_dict() for entry in entries],
        'count': len(entries)
    })


@bp.route('/last', methods=['GET'])
def last_backup():
    """Most recent backup, optionally filtered by type."""
    entry = get_manager().get_last_backup(request.args.get('type'))
    if entry is None:
        return jsonify({'error': 'No backups found'}), 404
    return jsonify(entry.to_dict())


@bp.route('/usage', methods=['GET'])
def storage_usage():
    """Total size of known backups, overall and by type."""
    return jsonify(get_manager().storage_usage())


@bp.route('/<backup_id>', methods=['GET'])
def get_backup(backup_id):
    entry = get_manager().get_backup(backup_id)
    if entry is None:
        return jsonify({'error': 'Backup not found'}), 404
    return jsonify(entry.to_dict())
