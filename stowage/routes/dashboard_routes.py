"""
Dashboard routes - Overview endpoint.
"""

from flask import Blueprint, jsonify, current_app
from flask_login import login_required

from stowage.models import Backup
from stowage.scheduler import get_scheduled_jobs, is_scheduler_running


bp = Blueprint('dashboard', __name__, url_prefix='/api/dashboard')


@bp.route('/overview', methods=['GET'])
@login_required
def get_overview():
    """
    Get dashboard overview statistics.

    Returns:
        JSON with overview stats:
        - total_backups: Number of indexed backups
        - last_backup: Most recent backup info
        - steps: Configured step identifiers
        - scheduler_status: Scheduler running status
        - scheduled_jobs: Jobs known to the scheduler
    """
    total_backups = Backup.query.count()
    last_backup = Backup.query.order_by(Backup.id.desc()).first()

    return jsonify({
        'total_backups': total_backups,
        'last_backup': last_backup.to_dict() if last_backup else None,
        'steps': list((current_app.config.get('BACKUP_STEPS') or {}).keys()),
        'compressor': current_app.config.get('BACKUP_COMPRESSOR'),
        'filesystem_type': current_app.config.get('FILESYSTEM_TYPE'),
        'scheduler_status': 'running' if is_scheduler_running() else 'stopped',
        'scheduled_jobs': get_scheduled_jobs()
    })
