"""
Backup executor - runs one backup configuration end to end.

Workflow:
1. Load the configuration and its server fresh from the database
2. Open an SSH session (password, stored key, system key, inline key)
3. Run pre-backup commands on the remote host (failures are warnings)
4. Compute and create the local destination (timestamped when versioning)
5. Probe the remote host and pull with rsync, or fall back to SFTP file copy
6. Prune old versions (versioning only)
7. Mark the history entry success or failed
"""

import logging
import os
from datetime import datetime
from typing import Optional

from flask import current_app

from pullkeeper import store
from pullkeeper.errors import ConfigurationError, TransportError
from pullkeeper.transport import connect
from .history import HistoryRecorder, STATUS_FAILED, STATUS_SUCCESS
from .probe import probe_capabilities
from .retention import RetentionManager
from .strategy import resolve_destination
from .transfer import RsyncTransfer, SftpTransfer, TransferResult, local_rsync_available

logger = logging.getLogger(__name__)

# Push the log buffer to the history row after this many new lines
LOG_FLUSH_INTERVAL = 5


class BackupExecutor:
    """
    Orchestrates a single run of a backup configuration.

    execute() never raises: every failure ends up in the history entry.
    """

    def __init__(self, config_id: str, history_id: str, recorder: Optional[HistoryRecorder] = None, settings=None):
        """
        Args:
            config_id: BackupConfig id, re-read from the database at run time
            history_id: 'running' history entry created for this run
            recorder: History writer (default: HistoryRecorder())
            settings: Mapping of config values (default: current_app.config)
        """
        self.config_id = config_id
        self.history_id = history_id
        self.recorder = recorder or HistoryRecorder()
        self.settings = settings if settings is not None else current_app.config
        self.config = None
        self.session = None
        self.destination = None
        self.logs = []
        self._log_flush_counter = 0

    def execute(self) -> str:
        """
        Run the backup and record its outcome.

        Returns:
            Final status, 'success' or 'failed'
        """
        self._log(f"Starting backup run {self.history_id}")

        try:
            result = self._execute_workflow()
        except Exception as e:
            logger.error(f"Backup {self.config_id} failed: {e}")
            self._log(f"Backup failed: {e}")
            try:
                self.recorder.complete_failure(self.history_id, e, self._log_text())
            except Exception:
                logger.exception(f"Failed to record failure of backup run {self.history_id}")
            return STATUS_FAILED

        stats = result.stats
        self._log(
            f"Backup completed successfully: {stats.file_count} files, "
            f"{stats.total_size} bytes total, {stats.transferred_size} bytes transferred"
        )
        try:
            self.recorder.complete_success(self.history_id, stats, self._log_text())
        except Exception:
            logger.exception(f"Failed to record success of backup run {self.history_id}")
            return STATUS_FAILED

        return STATUS_SUCCESS

    def _execute_workflow(self) -> TransferResult:
        """Execute the main backup workflow steps."""
        # Step 1: Fresh configuration and credentials
        self.config = store.find_config(self.config_id)
        if self.config is None:
            raise ConfigurationError(f"Backup configuration not found: {self.config_id}")

        server = self.config.server
        self._log(f"Backup '{self.config.name}': {server.address}:{self.config.source_path}")

        try:
            # Step 2: Connect
            self.session = connect(server, timeout=self.settings.get('SSH_CONNECT_TIMEOUT', 30))
            self._log(f"Connected to {server.host} using {self.session.auth.mode} authentication")
            self._flush_logs_to_db()

            # Step 3: Pre-backup commands
            self._run_pre_backup_commands()

            # Step 4: Destination
            self.destination = resolve_destination(
                self.config.destination_path,
                self.config.versioning_enabled,
                datetime.now()
            )
            os.makedirs(self.destination, exist_ok=True)
            self._log(f"Destination: {self.destination}")

            # Step 5: Transfer
            result = self._transfer()
        finally:
            self._close_session()

        # Step 6: Retention
        if self.config.versioning_enabled and self.config.versions_to_keep:
            self._apply_retention()

        return result

    def _run_pre_backup_commands(self):
        """Run configured remote commands in order; failures only warn."""
        for command in self.config.pre_backup_commands:
            self._log(f"Running pre-backup command: {command}")
            try:
                result = self.session.run(command)
            except TransportError as e:
                self._log(f"Warning: pre-backup command could not run: {e}")
                continue

            if result.stdout.strip():
                self._log(result.stdout.strip())

            if not result.ok:
                self._log(
                    f"Warning: pre-backup command exited with code {result.exit_status}: "
                    f"{result.stderr.strip()}"
                )

        if self.config.pre_backup_commands:
            self._flush_logs_to_db()

    def _transfer(self) -> TransferResult:
        """Pick rsync when both ends support it, else copy file by file."""
        capabilities = probe_capabilities(self.session)
        self._log(f"Remote capabilities: rsync={capabilities.rsync}, scp={capabilities.scp}")

        transfer = None
        if capabilities.rsync:
            available, reason = local_rsync_available(
                self.session.auth,
                self.settings.get('RSYNC_BINARY', 'rsync'),
                self.settings.get('SSHPASS_BINARY', 'sshpass')
            )
            if available:
                transfer = RsyncTransfer(
                    self.session,
                    self.config.source_path,
                    self.destination,
                    self.config.exclude_patterns,
                    rsync_binary=self.settings.get('RSYNC_BINARY', 'rsync'),
                    sshpass_binary=self.settings.get('SSHPASS_BINARY', 'sshpass'),
                    log=self._log
                )
            else:
                self._log(f"rsync found on remote host but {reason}; falling back to file copy")
        else:
            self._log("rsync not available on remote host; falling back to file copy")

        if transfer is None:
            if not capabilities.scp:
                self._log("Warning: scp not found on remote host, attempting SFTP")
            transfer = SftpTransfer(
                self.session,
                self.config.source_path,
                self.destination,
                self.config.exclude_patterns,
                max_workers=self.settings.get('TRANSFER_MAX_WORKERS', 4),
                log=self._log
            )

        self._flush_logs_to_db()
        result = transfer.run()

        if result.method == 'rsync':
            self._log(result.output.strip())

        return result

    def _apply_retention(self):
        """Prune versions next to this run's directory; errors never fail the run."""
        base_dir = os.path.dirname(self.destination)
        manager = RetentionManager(log=self._log)
        try:
            manager.prune(base_dir, self.config.versions_to_keep)
        except Exception as e:
            self._log(f"Warning: version retention failed: {e}")

    def _close_session(self):
        if self.session is not None:
            self.session.close()
            self.session = None

    def _log(self, message: str):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
        """
        timestamp = datetime.utcnow().strftime('%Y-%m-%d %H:%M:%S UTC')
        self.logs.append(f"[{timestamp}] {message}")
        logger.debug(message)

        self._log_flush_counter += 1
        if self._log_flush_counter >= LOG_FLUSH_INTERVAL:
            self._flush_logs_to_db()

    def _log_text(self) -> str:
        return '\n'.join(self.logs)

    def _flush_logs_to_db(self):
        """Flush accumulated logs to the running history entry for live visibility."""
        self._log_flush_counter = 0
        try:
            self.recorder.update_logs(self.history_id, self._log_text())
        except Exception as e:
            logger.warning(f"Failed to flush logs for backup run {self.history_id}: {e}")


def execute_backup(config_id: str, history_id: str) -> str:
    """
    Execute one run for an existing 'running' history entry.

    Returns:
        Final status, 'success' or 'failed'
    """
    return BackupExecutor(config_id, history_id).execute()
