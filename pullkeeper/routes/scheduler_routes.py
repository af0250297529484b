"""
Scheduler routes - inspect and rebuild the active backup timers.
"""

from flask import Blueprint, jsonify

from pullkeeper.scheduler import get_backup_scheduler


bp = Blueprint('scheduler', __name__, url_prefix='/api/scheduler')


def _scheduler_unavailable():
    return jsonify({'error': 'Scheduler is not running in this process'}), 503


@bp.route('/jobs', methods=['GET'])
def list_jobs():
    """
    List active backup timers.

    Returns:
        JSON array of {config_id, job_id, name, next_run, trigger}
    """
    backup_scheduler = get_backup_scheduler()
    if backup_scheduler is None:
        return _scheduler_unavailable()

    return jsonify(backup_scheduler.list_active())


@bp.route('/restart', methods=['POST'])
def restart_scheduler():
    """
    Drop every timer and reschedule all enabled configurations.

    Returns:
        JSON with the number of scheduled configurations
    """
    backup_scheduler = get_backup_scheduler()
    if backup_scheduler is None:
        return _scheduler_unavailable()

    scheduled = backup_scheduler.restart()
    return jsonify({
        'scheduled': scheduled,
        'message': f'Scheduler restarted with {scheduled} active backup job(s)'
    })
