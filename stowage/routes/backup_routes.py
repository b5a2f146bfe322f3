"""
Backup routes - list, create, restore and delete backups.
"""

from flask import Blueprint, jsonify, request, current_app
from flask_login import login_required

from stowage.backup.errors import (
    BackupError,
    BackupNotFoundError,
    BackupLockedError,
    NoStepsConfiguredError,
)
from stowage.backup.orchestrator import BackupService


bp = Blueprint('backups', __name__, url_prefix='/api/backups')


def _error_response(error: BackupError):
    """Map a pipeline exception to a JSON error response."""
    if isinstance(error, BackupNotFoundError):
        return jsonify({'error': str(error)}), 404
    if isinstance(error, BackupLockedError):
        return jsonify({'error': str(error)}), 409
    if isinstance(error, NoStepsConfiguredError):
        return jsonify({'error': str(error)}), 400

    current_app.logger.error(f"Backup operation failed: {error}")
    return jsonify({'error': str(error)}), 500


@bp.route('/', methods=['GET'])
@login_required
def list_backups():
    """
    Get backups with pagination, in creation order.

    Query params:
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with backup records and metadata
    """
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    if limit > 200 or limit <= 0:
        limit = 200
    if offset < 0:
        offset = 0

    service = BackupService.from_app()

    return jsonify({
        'backups': [backup.to_dict() for backup in service.get_backups(offset, limit)],
        'total': service.get_count(),
        'limit': limit,
        'offset': offset
    })


@bp.route('/<name>', methods=['GET'])
@login_required
def get_backup(name):
    """
    Get a single backup including the step configuration it was made with.
    """
    try:
        backup = BackupService.from_app().get_backup(name)
    except BackupError as e:
        return _error_response(e)

    data = backup.to_dict()
    data['meta'] = backup.meta
    return jsonify(data)


@bp.route('/', methods=['POST'])
@login_required
def create_backup():
    """
    Create a backup synchronously.

    Returns:
        201 with the new backup
    """
    try:
        backup = BackupService.from_app().create_backup()
    except BackupError as e:
        return _error_response(e)

    return jsonify(backup.to_dict()), 201


@bp.route('/<name>/restore', methods=['POST'])
@login_required
def restore_backup(name):
    """Restore a backup."""
    try:
        BackupService.from_app().restore_backup(name)
    except BackupError as e:
        return _error_response(e)

    return jsonify({'message': f'Backup {name} restored'})


@bp.route('/<name>', methods=['DELETE'])
@login_required
def delete_backup(name):
    """Delete a backup and its archive."""
    try:
        BackupService.from_app().delete_backup(name)
    except BackupError as e:
        return _error_response(e)

    return jsonify({'message': f'Backup {name} deleted'})
