"""
Backup history routes - View backup execution history.
"""

from flask import Blueprint, jsonify, request

from pullkeeper import db
from pullkeeper.backup.history import STATUSES, history_stats
from pullkeeper.models import BackupHistory


bp = Blueprint('history', __name__, url_prefix='/api/history')


def serialize_history(record, include_logs=False):
    """Convert a history record to a JSON-ready dict."""
    duration_seconds = None
    if record.completed_at:
        duration_seconds = int((record.completed_at - record.started_at).total_seconds())

    data = {
        'id': record.id,
        'config_id': record.config_id,
        'config_name': record.config.name if record.config else None,
        'status': record.status,
        'started_at': record.started_at.isoformat(),
        'completed_at': record.completed_at.isoformat() if record.completed_at else None,
        'duration_seconds': duration_seconds,
        'file_count': record.file_count,
        'total_size': record.total_size,
        'transferred_size': record.transferred_size,
        'error_message': record.error_message,
        'has_logs': bool(record.logs)
    }

    if include_logs:
        data['logs'] = record.logs

    return data


@bp.route('/', methods=['GET'])
def list_history():
    """
    Get backup history with filtering and pagination.

    Query params:
        - status: Filter by status (running/success/failed)
        - config_id: Filter by backup configuration ID
        - limit: Max number of records (default: 50, max: 200)
        - offset: Number of records to skip (default: 0)

    Returns:
        JSON with history records and metadata
    """
    status_filter = request.args.get('status')
    config_id_filter = request.args.get('config_id')
    limit = request.args.get('limit', 50, type=int)
    offset = request.args.get('offset', 0, type=int)

    # Enforce limits
    limit = max(1, min(limit, 200))
    if offset < 0:
        offset = 0

    query = BackupHistory.query

    if status_filter:
        if status_filter not in STATUSES:
            return jsonify({'error': 'Invalid status filter'}), 400
        query = query.filter(BackupHistory.status == status_filter)

    if config_id_filter:
        query = query.filter(BackupHistory.config_id == config_id_filter)

    total_count = query.count()

    records = query.order_by(
        BackupHistory.started_at.desc()
    ).limit(limit).offset(offset).all()

    return jsonify({
        'records': [serialize_history(record) for record in records],
        'total': total_count,
        'limit': limit,
        'offset': offset
    })


@bp.route('/stats', methods=['GET'])
def get_history_stats():
    """
    Get summary statistics across all backup configurations.

    Returns:
        JSON with totals, per-status counts, success rate, average size
        and the most recent successful backup
    """
    return jsonify(history_stats())


@bp.route('/<history_id>', methods=['GET'])
def get_history_detail(history_id):
    """
    Get a single history record including its logs.

    Poll this after triggering a manual run to follow progress.
    """
    record = db.get_or_404(BackupHistory, history_id)
    return jsonify(serialize_history(record, include_logs=True))
