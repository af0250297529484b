"""
Run history: the only writer of BackupHistory rows.

A row is created as 'running' and moved exactly once to 'success' or 'failed'.
Terminal rows are never touched again.
"""

import logging
from datetime import datetime
from typing import Dict, Any, Iterable, List, Optional

from sqlalchemy import func

from pullkeeper import db
from pullkeeper import store
from pullkeeper.errors import ConfigurationError, HistoryStateError
from pullkeeper.models import BackupHistory
from .parser import TransferStats

logger = logging.getLogger(__name__)

STATUS_RUNNING = 'running'
STATUS_SUCCESS = 'success'
STATUS_FAILED = 'failed'
STATUSES = (STATUS_RUNNING, STATUS_SUCCESS, STATUS_FAILED)

INTERRUPTED_MESSAGE = 'Interrupted: process restarted during backup'


class HistoryRecorder:
    """Creates history entries and moves them to a terminal state."""

    def begin(self, config_id: str) -> str:
        """
        Insert a 'running' entry for a new run.

        Raises:
            ConfigurationError: If the configuration does not exist
        """
        if not store.config_exists(config_id):
            raise ConfigurationError(f"Backup configuration not found: {config_id}")

        history_id = store.insert_history(config_id, STATUS_RUNNING, datetime.utcnow())
        logger.debug(f"Created history entry {history_id} for config {config_id}")
        return history_id

    def update_logs(self, history_id: str, logs: str):
        """Refresh the log text of a running entry, for live polling."""
        store.update_history(history_id, {'logs': logs}, expected_status=STATUS_RUNNING)

    def complete_success(self, history_id: str, stats: TransferStats, logs: Optional[str] = None):
        self._complete(history_id, {
            'status': STATUS_SUCCESS,
            'completed_at': datetime.utcnow(),
            'file_count': stats.file_count,
            'total_size': stats.total_size,
            'transferred_size': stats.transferred_size,
            'logs': logs,
        })

    def complete_failure(self, history_id: str, error, logs: Optional[str] = None):
        self._complete(history_id, {
            'status': STATUS_FAILED,
            'completed_at': datetime.utcnow(),
            'error_message': str(error) or error.__class__.__name__,
            'logs': logs,
        })

    def _complete(self, history_id: str, fields: Dict[str, Any]):
        """
        Raises:
            HistoryStateError: If the entry is missing or already terminal
        """
        if not store.update_history(history_id, fields, expected_status=STATUS_RUNNING):
            raise HistoryStateError(
                f"History entry {history_id} is missing or no longer running; "
                f"refusing to set status {fields['status']}"
            )
        logger.debug(f"History entry {history_id} marked {fields['status']}")

    def fail_stale_runs(self, keep: Iterable[str] = ()) -> int:
        """
        Mark 'running' entries left behind by a crashed process as failed.

        Args:
            keep: History ids that belong to runs still executing in this process

        Returns:
            Number of entries marked failed
        """
        keep = set(keep)
        stale_ids = [
            entry.id for entry in BackupHistory.query.filter_by(status=STATUS_RUNNING).all()
            if entry.id not in keep
        ]

        count = 0
        for history_id in stale_ids:
            if store.update_history(history_id, {
                'status': STATUS_FAILED,
                'completed_at': datetime.utcnow(),
                'error_message': INTERRUPTED_MESSAGE,
            }, expected_status=STATUS_RUNNING):
                count += 1

        if count:
            logger.warning(f"Marked {count} interrupted backup run(s) as failed")
        return count


def recent_history(config_id: str, limit: int = 5) -> List[BackupHistory]:
    """Most recent entries for a configuration, newest first."""
    return (BackupHistory.query
            .filter_by(config_id=config_id)
            .order_by(BackupHistory.started_at.desc())
            .limit(limit)
            .all())


def latest_backup(config_id: str) -> Optional[BackupHistory]:
    return (BackupHistory.query
            .filter_by(config_id=config_id)
            .order_by(BackupHistory.started_at.desc())
            .first())


def success_rate(config_id: str) -> int:
    """Percentage of successful runs; 100 when the configuration never ran."""
    statuses = [row.status for row in BackupHistory.query.filter_by(config_id=config_id).all()]
    if not statuses:
        return 100
    return round(statuses.count(STATUS_SUCCESS) / len(statuses) * 100)


def history_stats() -> Dict[str, Any]:
    """Totals across all configurations."""
    total = BackupHistory.query.count()

    status_counts = {status: 0 for status in STATUSES}
    for status, count in db.session.query(BackupHistory.status, func.count()).group_by(BackupHistory.status):
        status_counts[status] = count

    average_size = (db.session.query(func.avg(BackupHistory.total_size))
                    .filter(BackupHistory.total_size.isnot(None))
                    .scalar())

    recent = (BackupHistory.query
              .filter_by(status=STATUS_SUCCESS)
              .order_by(BackupHistory.completed_at.desc())
              .first())

    return {
        'total_backups': total,
        'status_counts': status_counts,
        'success_rate': round(status_counts[STATUS_SUCCESS] / total * 100) if total else 100,
        'average_size': round(average_size or 0),
        'last_success': {
            'id': recent.id,
            'config_id': recent.config_id,
            'config_name': recent.config.name,
            'completed_at': recent.completed_at.isoformat(),
        } if recent else None,
    }
