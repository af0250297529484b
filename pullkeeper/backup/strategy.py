"""
Command builders for the two transfer mechanisms.

- rsync: pulled by a local rsync process over ssh, built as an argument vector
- enumerate-then-fetch: a remote `find` listing, fetched file by file afterwards
"""

import os
import posixpath
import shlex
from datetime import datetime
from typing import List, Optional, Tuple

from pullkeeper.errors import ConfigurationError

RSYNC_FLAGS = ['-avz', '--stats']

# Options shared by every ssh invocation rsync makes
SSH_OPTIONS = ['-o', 'StrictHostKeyChecking=no', '-o', 'UserKnownHostsFile=/dev/null']

VERSION_DIR_FORMAT = '%Y-%m-%d_%H-%M-%S'

# Printed by `find` for each entry: type letter, tab, full path
FIND_OUTPUT_FORMAT = '%y\\t%p\\n'


def _require_paths(source: str, destination: str):
    if not source or not source.strip():
        raise ConfigurationError("Source path is required")

    if not destination or not destination.strip():
        raise ConfigurationError("Destination path is required")


def build_ssh_command(port: int = 22, key_filename: Optional[str] = None, batch_mode: bool = True) -> str:
    """Build the remote shell string passed to rsync via -e."""
    parts = ['ssh', '-p', str(port)] + SSH_OPTIONS
    if batch_mode:
        parts += ['-o', 'BatchMode=yes']
    if key_filename:
        parts += ['-i', key_filename]
    return shlex.join(parts)


def build_rsync_command(
    source: str,
    destination: str,
    exclude_patterns: Optional[List[str]] = None,
    ssh_command: Optional[str] = None,
    rsync_binary: str = 'rsync',
) -> List[str]:
    """
    Build the rsync argument vector for a remote to local pull.

    Args:
        source: Remote source, e.g. 'user@host:/var/www/'
        destination: Local destination directory
        exclude_patterns: Globs passed through as one --exclude each
        ssh_command: Remote shell for -e (see build_ssh_command)
        rsync_binary: Local rsync executable

    Raises:
        ConfigurationError: If either path is empty
    """
    _require_paths(source, destination)

    argv = [rsync_binary] + RSYNC_FLAGS
    if ssh_command:
        argv += ['-e', ssh_command]

    for pattern in exclude_patterns or []:
        argv.append(f'--exclude={pattern}')

    argv += [source, destination]
    return argv


def render_command(argv: List[str]) -> str:
    """Quoted shell form of an argument vector, for logs."""
    return shlex.join(argv)


def remote_source(username: str, host: str, path: str) -> str:
    # IPv6 literals need brackets in rsync's host:path syntax
    if ':' in host and not host.startswith('['):
        host = f'[{host}]'
    return f'{username}@{host}:{path}'


def glob_to_find_regex(pattern: str) -> str:
    """
    Convert a simple glob into a `find -regex` fragment.

    '.' becomes a literal dot, '*' any sequence and '?' any single character.
    """
    regex = []
    for char in pattern:
        if char == '.':
            regex.append('\\.')
        elif char == '*':
            regex.append('.*')
        elif char == '?':
            regex.append('.')
        else:
            regex.append(char)
    return ''.join(regex)


def quote_remote_path(path: str) -> str:
    """shlex.quote, leaving a leading '~' unquoted so the remote shell expands it."""
    if path == '~':
        return path
    if path.startswith('~/'):
        rest = path[2:]
        return '~/' + shlex.quote(rest) if rest else '~/'
    return shlex.quote(path)


def listing_root(source: str) -> Tuple[str, str]:
    """
    Split a remote source into (working directory, find target).

    Mirrors rsync: 'dir/' copies the contents of dir, 'dir' copies dir itself,
    so listed paths are relative to what lands in the destination.
    """
    if source.endswith('/'):
        return source.rstrip('/') or '/', '.'

    return posixpath.dirname(source) or '.', posixpath.basename(source)


def build_find_command(source: str, exclude_patterns: Optional[List[str]] = None) -> str:
    """
    Build the remote listing command for enumerate-then-fetch.

    Each pattern excludes the matching entry itself and everything below it.
    Output lines are '<type letter>\\t<relative path>' (GNU find).

    Raises:
        ConfigurationError: If source is empty
    """
    if not source or not source.strip():
        raise ConfigurationError("Source path is required")

    workdir, target = listing_root(source.strip())
    parts = ['cd', quote_remote_path(workdir), '&&', 'find', shlex.quote(target)]

    for pattern in exclude_patterns or []:
        regex = glob_to_find_regex(pattern.strip('/'))
        parts += ['-not', '-regex', shlex.quote(f'.*/{regex}')]
        parts += ['-not', '-regex', shlex.quote(f'.*/{regex}/.*')]

    parts += [
        '\\(',
        '-type', 'f', '-printf', shlex.quote(FIND_OUTPUT_FORMAT),
        '-o',
        '-type', 'd', '-printf', shlex.quote(FIND_OUTPUT_FORMAT),
        '\\)',
    ]
    return ' '.join(parts)


def resolve_destination(destination: str, versioning_enabled: bool = False, now: Optional[datetime] = None) -> str:
    """
    Compute the local directory a run writes into.

    Expands a leading '~', makes the path absolute and, with versioning, appends
    a YYYY-MM-DD_HH-mm-ss subdirectory.

    Raises:
        ConfigurationError: If destination is empty
    """
    if not destination or not destination.strip():
        raise ConfigurationError("Destination path is required")

    path = os.path.abspath(os.path.expanduser(destination.strip()))

    if versioning_enabled:
        now = now or datetime.now()
        path = os.path.join(path, now.strftime(VERSION_DIR_FORMAT))

    return path
