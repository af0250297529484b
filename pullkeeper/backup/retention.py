"""
Version retention for versioned backups.

Each versioned run writes into a YYYY-MM-DD_HH-mm-ss subdirectory of the
configured destination, so sorting names in reverse gives newest first.
"""

import logging
import os
import shutil
from typing import Callable, List, Optional

from pullkeeper.errors import RetentionError

logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Prunes old version directories beyond a keep count.

    A failure to delete one directory is logged and pruning continues with the
    rest; it never fails the run that triggered it.
    """

    def __init__(self, log: Optional[Callable[[str], None]] = None):
        """
        Args:
            log: Optional callback receiving progress messages (the run log)
        """
        self._run_log = log
        self.errors: List[str] = []

    def prune(self, base_dir: str, versions_to_keep: int) -> List[str]:
        """
        Delete all but the newest versions_to_keep subdirectories of base_dir.

        Returns:
            Paths that were deleted
        """
        base_dir = os.path.expanduser(base_dir)
        if not os.path.isdir(base_dir):
            self._log(f"Version directory does not exist, nothing to prune: {base_dir}")
            return []

        versions = sorted(
            (entry.name for entry in os.scandir(base_dir) if entry.is_dir(follow_symlinks=False)),
            reverse=True
        )
        expired = versions[max(versions_to_keep, 0):]

        if not expired:
            self._log(f"Keeping all {len(versions)} version(s) (limit {versions_to_keep})")
            return []

        self._log(f"Pruning {len(expired)} old version(s), keeping {versions_to_keep}")

        deleted = []
        for name in expired:
            path = os.path.join(base_dir, name)
            try:
                self._remove(path)
            except RetentionError as e:
                self.errors.append(str(e))
                self._log(f"Warning: {e}")
                continue
            deleted.append(path)
            self._log(f"Deleted old version: {name}")

        return deleted

    def _remove(self, path: str):
        try:
            shutil.rmtree(path)
        except OSError as e:
            raise RetentionError(f"Failed to delete old version {path}: {e}")

    def _log(self, message: str):
        logger.info(message)
        if self._run_log:
            self._run_log(message)


def prune_versions(base_dir: str, versions_to_keep: int) -> List[str]:
    """Convenience wrapper around RetentionManager.prune."""
    return RetentionManager().prune(base_dir, versions_to_keep)
