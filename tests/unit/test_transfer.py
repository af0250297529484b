"""
Unit tests for transfer mechanisms (pullkeeper/backup/transfer.py).

Tests the local rsync pull with a mocked subprocess and the SFTP
enumerate-then-fetch fallback with a fake session.
"""

import os
import subprocess
from unittest.mock import patch

import pytest

from pullkeeper.backup.transfer import (
    RsyncTransfer,
    SftpTransfer,
    local_rsync_available,
    sftp_path,
)
from pullkeeper.errors import TransferError, TransportError
from pullkeeper.transport import AuthMethod, CommandResult


RSYNC_OUTPUT = (
    "Number of files: 3\n"
    "Total file size: 2,048 bytes\n"
    "Total transferred file size: 1,024 bytes\n"
)


def completed(returncode=0, stdout=RSYNC_OUTPUT, stderr=''):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr=stderr)


class TestLocalRsyncAvailable:
    @patch('pullkeeper.backup.transfer.shutil.which')
    def test_key_auth_needs_only_rsync(self, mock_which):
        mock_which.side_effect = lambda name: '/usr/bin/rsync' if name == 'rsync' else None

        available, _ = local_rsync_available(AuthMethod('system_key', key_filename='/k'))

        assert available is True

    @patch('pullkeeper.backup.transfer.shutil.which')
    def test_password_auth_needs_sshpass(self, mock_which):
        mock_which.side_effect = lambda name: '/usr/bin/rsync' if name == 'rsync' else None

        available, reason = local_rsync_available(AuthMethod('password', password='pw'))

        assert available is False
        assert 'sshpass' in reason

    @patch('pullkeeper.backup.transfer.shutil.which', return_value=None)
    def test_missing_rsync(self, mock_which):
        available, reason = local_rsync_available(AuthMethod('system_key', key_filename='/k'))

        assert available is False
        assert 'rsync' in reason


class TestRsyncTransfer:
    """Test the local rsync pull."""

    def test_password_command(self, fake_session, tmp_path):
        """Password auth wraps rsync in sshpass -e with SSHPASS in the environment."""
        transfer = RsyncTransfer(fake_session, '/var/www/', str(tmp_path), ['*.log'])

        argv, env = transfer.build_command()

        assert argv[:3] == ['sshpass', '-e', 'rsync']
        assert '-avz' in argv and '--stats' in argv
        assert '--exclude=*.log' in argv
        assert argv[-2] == 'backup@web1.example.com:/var/www/'
        assert argv[-1] == str(tmp_path) + '/'
        assert env['SSHPASS'] == 's3cret'

        ssh_command = argv[argv.index('-e', 3) + 1]
        assert ssh_command.startswith('ssh -p 2222 ')
        assert 'BatchMode' not in ssh_command

    def test_key_file_command(self, key_server_spec, session_factory, tmp_path):
        session = session_factory(key_server_spec, auth=AuthMethod('stored_key', key_filename='/keys/deploy_ed25519'))
        transfer = RsyncTransfer(session, '/srv/db', str(tmp_path))

        argv, env = transfer.build_command()

        assert argv[0] == 'rsync'
        assert env.get('SSHPASS') == os.environ.get('SSHPASS')
        ssh_command = argv[argv.index('-e') + 1]
        assert ssh_command.endswith('-i /keys/deploy_ed25519')
        assert 'BatchMode=yes' in ssh_command

    @patch('pullkeeper.backup.transfer.subprocess.run')
    def test_inline_key_written_to_private_temp_file(self, mock_run, key_server_spec, session_factory, tmp_path):
        """Inline key content is written to a 0600 file that is removed after the run."""
        session = session_factory(key_server_spec, auth=AuthMethod('private_key', key_content='KEY DATA'))
        seen = {}

        def run(argv, **kwargs):
            ssh_command = argv[argv.index('-e') + 1]
            key_path = ssh_command.split('-i ')[-1]
            seen['path'] = key_path
            seen['mode'] = os.stat(key_path).st_mode & 0o777
            with open(key_path) as f:
                seen['content'] = f.read()
            return completed()

        mock_run.side_effect = run

        RsyncTransfer(session, '/srv/db', str(tmp_path)).run()

        assert seen['mode'] == 0o600
        assert seen['content'] == 'KEY DATA\n'
        assert not os.path.exists(seen['path'])

    @patch('pullkeeper.backup.transfer.subprocess.run')
    def test_run_success(self, mock_run, fake_session, tmp_path):
        mock_run.return_value = completed()
        messages = []

        result = RsyncTransfer(fake_session, '/var/www/', str(tmp_path), log=messages.append).run()

        assert result.method == 'rsync'
        assert (result.stats.file_count, result.stats.total_size, result.stats.transferred_size) == (3, 2048, 1024)
        assert messages[0].startswith('Running: sshpass -e rsync')
        assert mock_run.call_args.kwargs['capture_output'] is True
        assert 'shell' not in mock_run.call_args.kwargs

    @patch('pullkeeper.backup.transfer.subprocess.run')
    def test_vanished_files_is_warning(self, mock_run, fake_session, tmp_path):
        mock_run.return_value = completed(returncode=24, stderr='file has vanished: "/var/www/tmp.lock"')
        messages = []

        result = RsyncTransfer(fake_session, '/var/www/', str(tmp_path), log=messages.append).run()

        assert result.stats.file_count == 3
        assert any('vanished' in message for message in messages)

    @patch('pullkeeper.backup.transfer.subprocess.run')
    def test_stats_read_from_combined_output(self, mock_run, fake_session, tmp_path):
        """Stats are parsed from stdout and stderr together."""
        mock_run.return_value = completed(stdout='receiving incremental file list\n', stderr=RSYNC_OUTPUT)

        result = RsyncTransfer(fake_session, '/var/www/', str(tmp_path)).run()

        assert result.stats.file_count == 3
        assert 'receiving incremental file list' in result.output

    @patch('pullkeeper.backup.transfer.subprocess.run')
    def test_error_exit(self, mock_run, fake_session, tmp_path):
        mock_run.return_value = completed(returncode=23, stdout='', stderr='rsync: change_dir "/nope" failed')

        with pytest.raises(TransferError, match='code 23'):
            RsyncTransfer(fake_session, '/nope', str(tmp_path)).run()

    @patch('pullkeeper.backup.transfer.subprocess.run', side_effect=FileNotFoundError('sshpass'))
    def test_cannot_start(self, mock_run, fake_session, tmp_path):
        with pytest.raises(TransferError, match='Failed to start rsync'):
            RsyncTransfer(fake_session, '/var/www/', str(tmp_path)).run()


def listing(*entries, exit_status=0, stderr=''):
    stdout = ''.join(f'{kind}\t{path}\n' for kind, path in entries)
    return CommandResult(stdout=stdout, stderr=stderr, exit_status=exit_status)


class FakeSftp:
    """SFTP client that writes the remote path as file content."""

    def __init__(self, fail_on=None):
        self.fail_on = fail_on
        self.closed = False
        self.fetched = []

    def get(self, remote_path, local_path):
        if remote_path == self.fail_on:
            raise PermissionError(13, 'Permission denied')
        self.fetched.append(remote_path)
        with open(local_path, 'w') as f:
            f.write(remote_path)

    def close(self):
        self.closed = True


class TestSftpTransfer:
    """Test the enumerate-then-fetch fallback."""

    def _session(self, session_factory, server_spec, result, sftp=None):
        session = session_factory(server_spec, responses={'find': result})
        session.open_sftp.return_value = sftp or FakeSftp()
        return session

    def test_list_entries(self, session_factory, server_spec, tmp_path):
        session = self._session(session_factory, server_spec, listing(
            ('d', '.'), ('d', './css'), ('f', './index.html'), ('f', './css/site.css'), ('f', '/etc/passwd')
        ))

        directories, files = SftpTransfer(session, '/var/www/', str(tmp_path)).list_entries()

        assert directories == ['css']
        assert files == ['index.html', 'css/site.css']

    def test_copies_files(self, session_factory, server_spec, tmp_path):
        sftp = FakeSftp()
        session = self._session(session_factory, server_spec, listing(
            ('d', '.'), ('d', './css'), ('d', './empty'), ('f', './index.html'), ('f', './css/site.css')
        ), sftp=sftp)

        result = SftpTransfer(session, '/var/www/', str(tmp_path), max_workers=2).run()

        assert (tmp_path / 'index.html').read_text() == '/var/www/index.html'
        assert (tmp_path / 'css' / 'site.css').read_text() == '/var/www/css/site.css'
        assert (tmp_path / 'empty').is_dir()

        expected_bytes = len('/var/www/index.html') + len('/var/www/css/site.css')
        assert result.method == 'sftp'
        assert result.stats.file_count == 2
        assert result.stats.total_size == expected_bytes
        assert result.stats.transferred_size == expected_bytes
        assert sftp.closed

    def test_directory_itself_without_trailing_slash(self, session_factory, server_spec, tmp_path):
        """'/var/www' recreates www/ under the destination, like rsync."""
        session = self._session(session_factory, server_spec, listing(
            ('d', 'www'), ('f', 'www/index.html')
        ))

        SftpTransfer(session, '/var/www', str(tmp_path)).run()

        assert (tmp_path / 'www' / 'index.html').read_text() == '/var/www/index.html'

    def test_zero_files(self, session_factory, server_spec, tmp_path):
        """A listing with only directories fails the run."""
        session = self._session(session_factory, server_spec, listing(('d', '.'), ('d', './empty')))

        with pytest.raises(TransferError, match='No files to copy'):
            SftpTransfer(session, '/var/www/', str(tmp_path)).run()

        session.open_sftp.assert_not_called()

    def test_sftp_unavailable(self, session_factory, server_spec, tmp_path):
        session = self._session(session_factory, server_spec, listing(('f', './index.html')))
        session.open_sftp.side_effect = TransportError('SFTP unavailable on web1')

        with pytest.raises(TransferError, match='Neither rsync nor SFTP'):
            SftpTransfer(session, '/var/www/', str(tmp_path)).run()

    def test_listing_failure(self, session_factory, server_spec, tmp_path):
        session = self._session(session_factory, server_spec, listing(
            exit_status=1, stderr="find: '/nope': No such file or directory"
        ))

        with pytest.raises(TransferError, match='No such file or directory'):
            SftpTransfer(session, '/nope/', str(tmp_path)).run()

    def test_partial_listing_is_warning(self, session_factory, server_spec, tmp_path):
        session = self._session(session_factory, server_spec, listing(
            ('f', './index.html'), exit_status=1, stderr="find: './private': Permission denied"
        ))
        messages = []

        result = SftpTransfer(session, '/var/www/', str(tmp_path), log=messages.append).run()

        assert result.stats.file_count == 1
        assert any('listing incomplete' in message for message in messages)

    def test_download_failure(self, session_factory, server_spec, tmp_path):
        session = self._session(session_factory, server_spec, listing(
            ('f', './index.html'), ('f', './secret.key')
        ), sftp=FakeSftp(fail_on='/var/www/secret.key'))

        with pytest.raises(TransferError, match='1 of 2 file'):
            SftpTransfer(session, '/var/www/', str(tmp_path)).run()

    def test_home_relative_source(self, session_factory, server_spec, tmp_path):
        sftp = FakeSftp()
        session = self._session(session_factory, server_spec, listing(('f', './notes.txt')), sftp=sftp)

        SftpTransfer(session, '~/docs/', str(tmp_path)).run()

        assert sftp.fetched == ['docs/notes.txt']


class TestSftpPath:
    @pytest.mark.parametrize('path,expected', [
        ('~', '.'),
        ('~/docs', 'docs'),
        ('/var/www', '/var/www'),
    ])
    def test_conversion(self, path, expected):
        assert sftp_path(path) == expected
