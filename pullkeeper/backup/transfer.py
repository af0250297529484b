"""
Transfer mechanisms for pulling a remote source into a local directory.

- RsyncTransfer: delta sync by a local rsync process tunnelled over ssh
- SftpTransfer: enumerate-then-fetch fallback for hosts without rsync, listing
  with one remote `find` and downloading each file over SFTP
"""

import logging
import os
import posixpath
import shutil
import stat
import subprocess
import tempfile
import threading
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, List, Optional, Tuple

from pullkeeper.errors import TransferError, TransportError
from .parser import TransferStats, parse_rsync_output
from .strategy import (
    build_find_command,
    build_rsync_command,
    build_ssh_command,
    listing_root,
    remote_source,
    render_command,
)

logger = logging.getLogger(__name__)

# rsync exit code for "some source files vanished before they could be transferred"
RSYNC_VANISHED_FILES = 24


@dataclass
class TransferResult:
    stats: TransferStats
    output: str
    method: str


def local_rsync_available(auth, rsync_binary: str = 'rsync', sshpass_binary: str = 'sshpass') -> Tuple[bool, str]:
    """
    Check the local side of an rsync pull.

    Returns:
        (available, reason) where reason explains why not
    """
    if shutil.which(rsync_binary) is None:
        return False, f"local {rsync_binary} not found"

    if not auth.uses_key and shutil.which(sshpass_binary) is None:
        return False, f"{sshpass_binary} not found (required for password authentication)"

    return True, ''


class RsyncTransfer:
    """Runs rsync locally, pulling user@host:source into the destination."""

    def __init__(
        self,
        session,
        source: str,
        destination: str,
        exclude_patterns: Optional[List[str]] = None,
        rsync_binary: str = 'rsync',
        sshpass_binary: str = 'sshpass',
        log: Optional[Callable[[str], None]] = None,
    ):
        self.session = session
        self.source = source
        self.destination = destination
        self.exclude_patterns = exclude_patterns or []
        self.rsync_binary = rsync_binary
        self.sshpass_binary = sshpass_binary
        self._log = log or logger.info
        self._key_file = None

    def build_command(self) -> Tuple[List[str], dict]:
        """Return the argv and environment for the rsync process."""
        server = self.session.server
        auth = self.session.auth
        env = os.environ.copy()

        key_filename = None
        if auth.uses_key:
            key_filename = auth.key_filename or self._write_key_file(auth.key_content)

        ssh_command = build_ssh_command(server.port, key_filename, batch_mode=auth.uses_key)

        argv = build_rsync_command(
            remote_source(server.username, server.host, self.source),
            self.destination.rstrip('/') + '/',
            self.exclude_patterns,
            ssh_command=ssh_command,
            rsync_binary=self.rsync_binary,
        )

        if not auth.uses_key:
            # sshpass -e reads the password from SSHPASS, keeping it off the command line
            argv = [self.sshpass_binary, '-e'] + argv
            env['SSHPASS'] = auth.password

        return argv, env

    def run(self) -> TransferResult:
        """
        Raises:
            TransferError: If rsync cannot be started or exits with an error
        """
        try:
            argv, env = self.build_command()
            self._log(f"Running: {render_command(argv)}")

            try:
                completed = subprocess.run(argv, capture_output=True, text=True, env=env)
            except OSError as e:
                raise TransferError(f"Failed to start rsync: {e}")
        finally:
            self._remove_key_file()

        output = completed.stdout
        if completed.stderr:
            output = f"{output}\n{completed.stderr}" if output else completed.stderr

        if completed.returncode == RSYNC_VANISHED_FILES:
            self._log("Warning: some source files vanished during transfer")
        elif completed.returncode != 0:
            raise TransferError(
                f"rsync exited with code {completed.returncode}: "
                f"{completed.stderr.strip() or completed.stdout.strip()[-500:]}"
            )

        return TransferResult(stats=parse_rsync_output(output), output=output, method='rsync')

    def _write_key_file(self, content: str) -> str:
        """Write inline key content to a private temp file for ssh -i."""
        fd, path = tempfile.mkstemp(prefix='pullkeeper_key_')
        with os.fdopen(fd, 'w') as f:
            f.write(content if content.endswith('\n') else content + '\n')
        os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)
        self._key_file = path
        return path

    def _remove_key_file(self):
        if self._key_file and os.path.exists(self._key_file):
            try:
                os.remove(self._key_file)
            except OSError as e:
                logger.warning(f"Failed to remove temporary key file: {e}")
        self._key_file = None


def sftp_path(path: str) -> str:
    """SFTP does not expand '~'; paths relative to the login directory do the same job."""
    if path == '~':
        return '.'
    if path.startswith('~/'):
        return path[2:] or '.'
    return path


class SftpTransfer:
    """
    Enumerate-then-fetch fallback.

    Lists the source with one remote `find`, recreates directories locally and
    downloads files in parallel, one SFTP channel per worker thread.
    """

    def __init__(
        self,
        session,
        source: str,
        destination: str,
        exclude_patterns: Optional[List[str]] = None,
        max_workers: int = 4,
        log: Optional[Callable[[str], None]] = None,
    ):
        self.session = session
        self.source = source
        self.destination = destination
        self.exclude_patterns = exclude_patterns or []
        self.max_workers = max(1, max_workers)
        self._log = log or logger.info

        self._local = threading.local()
        self._clients = []
        self._clients_lock = threading.Lock()

    def list_entries(self) -> Tuple[List[str], List[str]]:
        """
        List the remote source.

        Returns:
            (directories, files) as paths relative to the destination

        Raises:
            TransferError: If the listing command fails outright
        """
        command = build_find_command(self.source, self.exclude_patterns)
        self._log(f"Listing remote files: {command}")

        try:
            result = self.session.run(command)
        except TransportError as e:
            raise TransferError(f"Failed to list remote files: {e}")

        if result.exit_status != 0:
            if not result.stdout.strip():
                raise TransferError(
                    f"Failed to list remote files in {self.source}: "
                    f"{result.stderr.strip() or f'exit code {result.exit_status}'}"
                )
            # Partial listing, e.g. unreadable subdirectories
            self._log(f"Warning: remote listing incomplete: {result.stderr.strip()}")

        directories, files = [], []
        for line in result.stdout.splitlines():
            kind, _, path = line.partition('\t')
            relative = posixpath.normpath(path)

            if relative == '.' or not path:
                continue
            if relative.startswith('..') or posixpath.isabs(relative):
                self._log(f"Warning: skipping unexpected path outside source: {path}")
                continue

            if kind == 'd':
                directories.append(relative)
            elif kind == 'f':
                files.append(relative)

        return directories, files

    def run(self) -> TransferResult:
        """
        Raises:
            TransferError: If SFTP is unavailable, no files match, or a download fails
        """
        directories, files = self.list_entries()

        if not files:
            raise TransferError(f"No files to copy: {self.source} contains no files after exclusions")

        self._log(f"Found {len(files)} file(s) and {len(directories)} directories")

        # One channel up front tells us whether the server allows SFTP at all
        try:
            self.session.open_sftp().close()
        except TransportError as e:
            raise TransferError(f"Neither rsync nor SFTP is usable on the remote host: {e}")

        for directory in directories:
            Path(self.destination, directory).mkdir(parents=True, exist_ok=True)

        workdir, _ = listing_root(self.source)
        remote_base = sftp_path(workdir)

        try:
            with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='sftp') as pool:
                futures = [
                    pool.submit(self._download, posixpath.join(remote_base, relative), relative)
                    for relative in files
                ]
                wait(futures)
        finally:
            self._close_clients()

        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            raise TransferError(f"{len(errors)} of {len(files)} file(s) failed to copy; first error: {errors[0]}")

        total_bytes = sum(f.result() for f in futures)
        output = f"Copied {len(files)} file(s), {total_bytes} bytes via SFTP"
        self._log(output)

        return TransferResult(
            stats=TransferStats(file_count=len(files), total_size=total_bytes, transferred_size=total_bytes),
            output=output,
            method='sftp',
        )

    def _sftp(self):
        client = getattr(self._local, 'sftp', None)
        if client is None:
            client = self.session.open_sftp()
            self._local.sftp = client
            with self._clients_lock:
                self._clients.append(client)
        return client

    def _download(self, remote_path: str, relative: str) -> int:
        local_path = os.path.join(self.destination, *relative.split('/'))
        os.makedirs(os.path.dirname(local_path), exist_ok=True)

        try:
            self._sftp().get(remote_path, local_path)
        except FileNotFoundError:
            raise TransferError(f"Remote file not found: {remote_path}")
        except PermissionError:
            raise TransferError(f"Permission denied accessing remote file: {remote_path}")
        except Exception as e:
            raise TransferError(f"Failed to download {remote_path}: {e}")

        size = os.path.getsize(local_path)
        logger.debug(f"Copied {remote_path} ({size} bytes)")
        return size

    def _close_clients(self):
        with self._clients_lock:
            clients, self._clients = self._clients, []
        for client in clients:
            try:
                client.close()
            except Exception as e:
                logger.debug(f"Error closing SFTP channel: {e}")
