"""
Backup module for pullkeeper.

This module handles one backup run end to end:
- Capability probing of the remote host
- Transfer command construction (rsync, find listing)
- Transfer execution (rsync pull or SFTP file copy)
- rsync statistics parsing
- Run history recording
- Version retention
"""

from .executor import BackupExecutor, execute_backup
from .history import HistoryRecorder
from .parser import TransferStats, parse_rsync_output
from .probe import Capabilities, probe_capabilities
from .retention import RetentionManager, prune_versions
from .transfer import RsyncTransfer, SftpTransfer

__all__ = [
    'BackupExecutor',
    'execute_backup',
    'HistoryRecorder',
    'TransferStats',
    'parse_rsync_output',
    'Capabilities',
    'probe_capabilities',
    'RetentionManager',
    'prune_versions',
    'RsyncTransfer',
    'SftpTransfer'
]
