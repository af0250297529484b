"""
APScheduler-backed job scheduling for pullkeeper.

One BackupScheduler instance is created per process that owns the timers.
It keeps exactly one cron job per enabled backup configuration and
dispatches runs onto the APScheduler thread pool.
"""

import logging
import re
import threading
from contextlib import nullcontext
from datetime import datetime, timezone
from typing import Dict, List, Optional

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.jobstores.base import JobLookupError
from apscheduler.jobstores.memory import MemoryJobStore
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.combining import OrTrigger
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.date import DateTrigger
from flask import current_app, has_app_context

from pullkeeper import store
from pullkeeper.backup.executor import execute_backup
from pullkeeper.backup.history import HistoryRecorder
from pullkeeper.errors import ConfigurationError

logger = logging.getLogger(__name__)

# Standard cron numbering: 0 and 7 are both Sunday
DAY_NAMES = ('sun', 'mon', 'tue', 'wed', 'thu', 'fri', 'sat', 'sun')

NUMERIC_DOW_RE = re.compile(r'\*|\d+(-\d+)?')


def _translate_day_of_week(field: str) -> str:
    """
    Rewrite numeric cron day-of-week tokens as weekday names.

    APScheduler numbers Monday as 0, cron numbers Sunday as 0, so numbers are
    expanded into explicit name lists. Name tokens pass through unchanged.
    """
    if field == '*':
        return field

    parts = []
    for part in field.split(','):
        expr, _, step = part.partition('/')
        if not NUMERIC_DOW_RE.fullmatch(expr):
            parts.append(part)
            continue

        if step and not step.isdigit() or step == '0':
            raise ConfigurationError(f"Invalid day-of-week step: {part!r}")
        step_size = int(step) if step else 1

        if expr == '*':
            first, last = 0, 6
        elif '-' in expr:
            first, last = (int(value) for value in expr.split('-'))
        else:
            first = int(expr)
            last = 6 if step else first

        if not (0 <= first <= 7 and 0 <= last <= 7) or first > last:
            raise ConfigurationError(f"Invalid day-of-week value: {part!r}")

        days = [DAY_NAMES[day] for day in range(first, last + 1, step_size)]
        parts.append(','.join(dict.fromkeys(days)))

    return ','.join(parts)


def parse_cron(expression: str, tz='UTC'):
    """
    Build an APScheduler trigger from a 5-field crontab expression.

    When neither day-of-month nor day-of-week starts with '*', cron fires
    when either matches, so the two halves are combined with an OrTrigger.

    Raises:
        ConfigurationError: If the expression is malformed
    """
    fields = (expression or '').split()
    if len(fields) != 5:
        raise ConfigurationError(
            f"Invalid cron expression {expression!r}: expected 5 fields, got {len(fields)}"
        )

    minute, hour, day, month, day_of_week = fields

    # crontab ORs the day fields only when neither starts with '*'
    either_day = not day.startswith('*') and not day_of_week.startswith('*')

    try:
        day_of_week = _translate_day_of_week(day_of_week)

        if either_day:
            return OrTrigger([
                CronTrigger(minute=minute, hour=hour, day=day, month=month, timezone=tz),
                CronTrigger(minute=minute, hour=hour, month=month, day_of_week=day_of_week, timezone=tz),
            ])

        return CronTrigger(
            minute=minute, hour=hour, day=day, month=month, day_of_week=day_of_week, timezone=tz
        )
    except ValueError as e:
        raise ConfigurationError(f"Invalid cron expression {expression!r}: {e}")


def create_background_scheduler(config) -> BackgroundScheduler:
    """
    Configure an APScheduler BackgroundScheduler from app config.

    Timers are held in memory only; they are rebuilt from the database on start.
    """
    jobstores = {
        'default': MemoryJobStore()
    }

    executors = {
        'default': ThreadPoolExecutor(max_workers=config.get('SCHEDULER_MAX_WORKERS', 10))
    }

    job_defaults = {
        'coalesce': True,  # Combine multiple pending instances into one
        'max_instances': config.get('SCHEDULER_MAX_INSTANCES', 1),  # Skip a fire while the previous one runs
        'misfire_grace_time': config.get('SCHEDULER_MISFIRE_GRACE_TIME', 300)
    }

    return BackgroundScheduler(
        jobstores=jobstores,
        executors=executors,
        job_defaults=job_defaults,
        timezone=config.get('SCHEDULER_TIMEZONE', 'UTC')
    )


def _job_id(config_id: str) -> str:
    return f"backup_{config_id}"


class BackupScheduler:
    """
    Owns the cron timers of one process.

    Maps configuration id -> APScheduler job. A fired timer passes only the
    configuration id; the executor reads fresh configuration at run time.
    """

    def __init__(self, app, scheduler: Optional[BackgroundScheduler] = None):
        """
        Args:
            app: Flask app, used to push an app context in worker threads
            scheduler: Pre-built APScheduler instance (default: from app config)
        """
        self.app = app
        self.scheduler = scheduler or create_background_scheduler(app.config)
        self.timezone = app.config.get('SCHEDULER_TIMEZONE', 'UTC')
        self.recorder = HistoryRecorder()

        self._jobs: Dict[str, object] = {}
        self._lock = threading.RLock()
        self._in_flight = set()
        self._in_flight_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self.scheduler.running

    def _app_context(self):
        """Reuse the current app context if it is ours, else push a new one."""
        if has_app_context() and current_app._get_current_object() is self.app:
            return nullcontext()
        return self.app.app_context()

    def start(self):
        """Start APScheduler and schedule every enabled configuration."""
        if not self.scheduler.running:
            self.scheduler.start()
            logger.info("APScheduler started successfully")
        else:
            logger.info("Scheduler already running")

        self.initialize()

    def shutdown(self, wait: bool = False):
        """Stop APScheduler and forget all timers."""
        with self._lock:
            self._jobs.clear()

        if self.scheduler.running:
            self.scheduler.shutdown(wait=wait)
            logger.info("APScheduler stopped")

    def initialize(self) -> int:
        """
        Schedule every enabled configuration from the database.

        Returns:
            Number of configurations scheduled
        """
        logger.info("Initializing backup scheduler...")

        with self._app_context():
            configs = store.find_enabled_configs()

            if self.app.config.get('RECONCILE_STALE_RUNS', False):
                # Held across the sweep so no run can begin unseen
                with self._in_flight_lock:
                    self.recorder.fail_stale_runs(keep=set(self._in_flight))

        scheduled = sum(1 for config in configs if self.schedule(config))
        logger.info(f"Scheduled {scheduled} of {len(configs)} backup jobs")
        return scheduled

    def schedule(self, config) -> bool:
        """
        Schedule (or reschedule) a configuration's cron timer.

        Any existing timer for the same id is replaced. A malformed cron
        expression is logged and leaves the configuration unscheduled.

        Args:
            config: Object with id, name and schedule attributes

        Returns:
            True if a timer is now active for the configuration
        """
        with self._lock:
            self.stop(config.id)

            try:
                trigger = parse_cron(config.schedule, self.timezone)
            except ConfigurationError as e:
                logger.error(f"Failed to schedule backup job for {config.name} ({config.id}): {e}")
                return False

            job = self.scheduler.add_job(
                func=self._run_scheduled,
                args=[config.id],
                trigger=trigger,
                id=_job_id(config.id),
                name=f"Backup: {config.name}",
                replace_existing=True
            )
            self._jobs[config.id] = job

        logger.info(f"Scheduled backup job for {config.name} ({config.id}) with schedule {config.schedule}")
        return True

    def stop(self, config_id: str) -> bool:
        """
        Cancel a configuration's timer.

        Returns:
            True if a timer was removed, False if none was active
        """
        with self._lock:
            job = self._jobs.pop(config_id, None)
            if job is None:
                logger.debug(f"No active job found for backup ID {config_id}")
                return False

            try:
                self.scheduler.remove_job(job.id)
            except JobLookupError:
                logger.warning(f"Timer for backup ID {config_id} was already gone")

        logger.info(f"Stopped and removed backup job for ID {config_id}")
        return True

    def restart(self) -> int:
        """
        Drop every timer and rebuild them from the database.

        Returns:
            Number of configurations scheduled
        """
        logger.info("Restarting backup scheduler...")

        with self._lock:
            for config_id in list(self._jobs):
                self.stop(config_id)
            self._jobs.clear()

        scheduled = self.initialize()
        logger.info("Scheduler restarted successfully")
        return scheduled

    def is_scheduled(self, config_id: str) -> bool:
        with self._lock:
            return config_id in self._jobs

    def list_active(self) -> List[dict]:
        """Describe every active configuration timer."""
        with self._lock:
            jobs = list(self._jobs.items())

        active = []
        for config_id, job in jobs:
            # Jobs added before the scheduler starts have no next_run_time yet
            next_run = getattr(job, 'next_run_time', None)
            active.append({
                'config_id': config_id,
                'job_id': job.id,
                'name': job.name,
                'next_run': next_run.isoformat() if next_run else None,
                'trigger': str(job.trigger)
            })
        return active

    def start_run(self, config_id: str) -> str:
        """
        Start a backup now, without waiting for it to finish.

        Disabled configurations may be run manually.

        Returns:
            Id of the new 'running' history entry, for polling

        Raises:
            RuntimeError: If the scheduler is not running
            ConfigurationError: If the configuration does not exist
        """
        if not self.scheduler.running:
            raise RuntimeError("Scheduler not running")

        with self._app_context():
            history_id = self._begin_run(config_id)

            try:
                self.scheduler.add_job(
                    func=self._execute,
                    args=[config_id, history_id],
                    trigger=DateTrigger(run_date=datetime.now(timezone.utc)),
                    id=f"manual_{history_id}",
                    name=f"Manual backup: {config_id}",
                    misfire_grace_time=None
                )
            except Exception as e:
                self._end_run(history_id)
                self.recorder.complete_failure(history_id, f"Failed to dispatch backup: {e}")
                raise

        logger.info(f"Manually triggered backup {config_id} (run {history_id})")
        return history_id

    def _run_scheduled(self, config_id: str):
        """Timer callback: create the history entry, then execute."""
        with self.app.app_context():
            try:
                enabled = store.is_enabled(config_id)
                if enabled is None:
                    logger.warning(f"Timer fired for deleted backup configuration {config_id}")
                    return
                if not enabled:
                    logger.warning(f"Skipping scheduled run of disabled backup configuration {config_id}")
                    return

                history_id = self._begin_run(config_id)
            except Exception:
                logger.exception(f"Failed to start scheduled backup {config_id}")
                return

        self._execute(config_id, history_id)

    def _begin_run(self, config_id: str) -> str:
        """Create the 'running' entry and mark it in flight until _execute ends."""
        with self._in_flight_lock:
            history_id = self.recorder.begin(config_id)
            self._in_flight.add(history_id)
        return history_id

    def _end_run(self, history_id: str):
        with self._in_flight_lock:
            self._in_flight.discard(history_id)

    def _execute(self, config_id: str, history_id: str):
        """Run the executor in its own app context; nothing escapes to APScheduler."""
        try:
            logger.info(f"Scheduler executing backup {config_id} (run {history_id})")
            with self.app.app_context():
                status = execute_backup(config_id, history_id)
            logger.info(f"Backup {config_id} completed with status: {status}")
        except Exception:
            logger.exception(f"Backup {config_id} (run {history_id}) failed unexpectedly")
        finally:
            self._end_run(history_id)


def get_backup_scheduler(app=None) -> Optional[BackupScheduler]:
    """The scheduler owned by this process, or None in non-scheduler workers."""
    app = app or current_app
    return app.extensions.get('backup_scheduler')
