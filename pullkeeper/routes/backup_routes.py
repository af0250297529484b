"""
Backup configuration routes - manual runs, enable/disable and per-config history.
"""

import logging

from flask import Blueprint, jsonify, request

from pullkeeper import db
from pullkeeper.backup.history import latest_backup, recent_history, success_rate
from pullkeeper.errors import ConfigurationError
from pullkeeper.models import BackupConfig
from pullkeeper.routes.history_routes import serialize_history
from pullkeeper.scheduler import get_backup_scheduler

logger = logging.getLogger(__name__)

bp = Blueprint('backups', __name__, url_prefix='/api/backups')


@bp.route('/<config_id>/run', methods=['POST'])
def run_backup_now(config_id):
    """
    Manually trigger a backup to run immediately.

    Disabled configurations can be run this way too.

    Returns:
        201 with the history_id to poll via /api/history/<id>
    """
    backup_scheduler = get_backup_scheduler()
    if backup_scheduler is None:
        return jsonify({'error': 'Scheduler is not running in this process'}), 503

    try:
        history_id = backup_scheduler.start_run(config_id)
    except ConfigurationError as e:
        return jsonify({'error': str(e)}), 404
    except RuntimeError as e:
        return jsonify({'error': str(e)}), 503

    return jsonify({
        'history_id': history_id,
        'message': 'Backup has been queued for immediate execution'
    }), 201


@bp.route('/<config_id>/toggle', methods=['POST'])
def toggle_backup(config_id):
    """
    Enable or disable a backup configuration.

    Enabling schedules its timer, disabling stops it. Without a scheduler in
    this process only the stored flag changes; the timer follows on the next
    scheduler restart.

    Returns:
        JSON with the new enabled state and whether a timer is active
    """
    config = db.get_or_404(BackupConfig, config_id)

    config.enabled = not config.enabled
    db.session.commit()

    scheduled = None
    backup_scheduler = get_backup_scheduler()
    if backup_scheduler is not None:
        if config.enabled:
            backup_scheduler.schedule(config)
        else:
            backup_scheduler.stop(config.id)
        scheduled = backup_scheduler.is_scheduled(config.id)

    logger.info(f"Backup '{config.name}' {'enabled' if config.enabled else 'disabled'}")

    return jsonify({
        'id': config.id,
        'enabled': config.enabled,
        'scheduled': scheduled,
        'message': f"Backup {'enabled' if config.enabled else 'disabled'} successfully"
    })


@bp.route('/<config_id>/history', methods=['GET'])
def get_backup_history(config_id):
    """
    Get recent history for one backup configuration.

    Query params:
        - limit: Max number of records (default: 5, max: 200)

    Returns:
        JSON with recent records, the latest run and the success rate
    """
    config = db.get_or_404(BackupConfig, config_id)

    limit = request.args.get('limit', 5, type=int)
    limit = max(1, min(limit, 200))

    latest = latest_backup(config.id)

    return jsonify({
        'config_id': config.id,
        'config_name': config.name,
        'success_rate': success_rate(config.id),
        'latest': serialize_history(latest) if latest else None,
        'records': [serialize_history(record) for record in recent_history(config.id, limit)]
    })
