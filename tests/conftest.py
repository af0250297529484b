"""
Shared pytest fixtures for pullkeeper tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- Server, SSH key, backup configuration and history fixtures
- A real APScheduler-backed BackupScheduler, started paused
- Mock fixtures for the SSH transport
"""

from datetime import datetime, timedelta
from unittest.mock import MagicMock, patch

import pytest

from pullkeeper import create_app, db as _db
from pullkeeper.models import SSHKey, Server, BackupConfig, BackupHistory
from pullkeeper.scheduler import BackupScheduler
from pullkeeper.store import ServerSpec, StoredKey
from pullkeeper.transport import AuthMethod, CommandResult


@pytest.fixture(scope='function')
def app():
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database; no scheduler is started by the factory.
    """
    app = create_app('testing')
    yield app


@pytest.fixture(scope='function')
def db(app):
    """
    Create database with all tables.

    Each test gets a fresh database.
    """
    with app.app_context():
        _db.create_all()
        yield _db
        _db.session.remove()
        _db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Flask test client for making HTTP requests."""
    return app.test_client()


@pytest.fixture(scope='function')
def ssh_key(db):
    """Stored SSH key pointing at a key file path."""
    key = SSHKey(
        name='deploy',
        private_key_path='/keys/deploy_ed25519',
        public_key_path='/keys/deploy_ed25519.pub'
    )
    db.session.add(key)
    db.session.commit()
    return key


@pytest.fixture(scope='function')
def server(db):
    """Server using password authentication."""
    server = Server(
        name='web-1',
        host='web1.example.com',
        port=22,
        username='backup',
        password='s3cret'
    )
    db.session.add(server)
    db.session.commit()
    return server


@pytest.fixture(scope='function')
def backup_config(db, server, tmp_path):
    """Enabled daily backup of /var/www/ into a temporary directory."""
    config = BackupConfig(
        server_id=server.id,
        name='www',
        source_path='/var/www/',
        destination_path=str(tmp_path / 'backups' / 'www'),
        schedule='0 2 * * *',  # Daily at 2 AM
        exclude_patterns='*.log\nnode_modules',
        enabled=True
    )
    db.session.add(config)
    db.session.commit()
    return config


@pytest.fixture(scope='function')
def disabled_config(db, server, tmp_path):
    """Disabled backup configuration."""
    config = BackupConfig(
        server_id=server.id,
        name='etc',
        source_path='/etc',
        destination_path=str(tmp_path / 'backups' / 'etc'),
        schedule='30 3 * * 0',  # Sundays at 3:30 AM
        enabled=False
    )
    db.session.add(config)
    db.session.commit()
    return config


@pytest.fixture(scope='function')
def backup_history(db, backup_config):
    """A completed successful run for backup_config."""
    started = datetime.utcnow() - timedelta(minutes=5)
    history = BackupHistory(
        config_id=backup_config.id,
        status='success',
        started_at=started,
        completed_at=started + timedelta(seconds=42),
        file_count=42,
        total_size=1024,
        transferred_size=512,
        logs='[2024-01-15 02:00:00 UTC] Starting backup\n[2024-01-15 02:00:42 UTC] Backup completed successfully'
    )
    db.session.add(history)
    db.session.commit()
    return history


@pytest.fixture
def server_spec():
    """Password-only ServerSpec, independent of the database."""
    return ServerSpec(
        id='srv1',
        name='web-1',
        host='web1.example.com',
        port=2222,
        username='backup',
        password='s3cret'
    )


@pytest.fixture
def key_server_spec():
    """ServerSpec authenticating with a stored key file."""
    return ServerSpec(
        id='srv2',
        name='db-1',
        host='db1.example.com',
        port=22,
        username='root',
        stored_key=StoredKey(id='key1', name='deploy', private_key_path='/keys/deploy_ed25519')
    )


def make_session(server, auth=None, responses=None):
    """
    Build a fake RemoteSession.

    Args:
        server: ServerSpec the session belongs to
        auth: AuthMethod used (default: password)
        responses: Mapping of command substring -> CommandResult
    """
    session = MagicMock()
    session.server = server
    session.auth = auth or AuthMethod('password', password=server.password or 'pw')
    responses = responses or {}

    def run(command, timeout=None):
        for fragment, result in responses.items():
            if fragment in command:
                return result
        return CommandResult(stdout='', stderr='', exit_status=0)

    session.run.side_effect = run
    return session


@pytest.fixture
def session_factory():
    """Factory fixture returning make_session."""
    return make_session


@pytest.fixture
def fake_session(server_spec):
    """Fake RemoteSession for server_spec that answers every command with success."""
    return make_session(server_spec)


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SSH/SFTP testing.

    Returns a MagicMock that simulates SSH connections.
    """
    with patch('pullkeeper.transport.SSHClient') as mock_ssh:
        # Mock SFTP client
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp

        # Mock connection success
        mock_ssh.return_value.connect.return_value = None

        yield mock_ssh


@pytest.fixture(scope='function')
def backup_scheduler(app, db):
    """
    Real BackupScheduler around a paused APScheduler.

    Timers are registered and computed but never fire.
    """
    backup_scheduler = BackupScheduler(app)
    backup_scheduler.scheduler.start(paused=True)
    app.extensions['backup_scheduler'] = backup_scheduler

    yield backup_scheduler

    app.extensions.pop('backup_scheduler', None)
    backup_scheduler.shutdown(wait=False)
