import uuid
from datetime import datetime
from pullkeeper import db


def _new_id():
    return uuid.uuid4().hex


class SSHKey(db.Model):
    """Stored SSH key, referenced by servers"""
    __tablename__ = 'ssh_keys'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), nullable=False)
    private_key_path = db.Column(db.String(500))
    public_key_path = db.Column(db.String(500))
    private_key_content = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    servers = db.relationship('Server', back_populates='ssh_key')

    def __repr__(self):
        return f'<SSHKey {self.name}>'


class Server(db.Model):
    """Remote host that backups are pulled from"""
    __tablename__ = 'servers'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    name = db.Column(db.String(255), nullable=False)
    host = db.Column(db.String(255), nullable=False)
    port = db.Column(db.Integer, default=22, nullable=False)
    username = db.Column(db.String(255), nullable=False)
    password = db.Column(db.Text)  # Plain password auth
    private_key = db.Column(db.Text)  # Inline private key content
    ssh_key_id = db.Column(db.String(32), db.ForeignKey('ssh_keys.id', ondelete='SET NULL'))
    system_key_path = db.Column(db.String(500))  # Key file on this machine, e.g. ~/.ssh/id_ed25519
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    ssh_key = db.relationship('SSHKey', back_populates='servers')
    backup_configs = db.relationship('BackupConfig', back_populates='server', cascade='all, delete-orphan')

    def __repr__(self):
        return f'<Server {self.name} {self.username}@{self.host}:{self.port}>'


class BackupConfig(db.Model):
    """Scheduled pull of a remote path into local storage"""
    __tablename__ = 'backup_configs'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    server_id = db.Column(db.String(32), db.ForeignKey('servers.id', ondelete='CASCADE'), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    source_path = db.Column(db.String(1000), nullable=False)
    destination_path = db.Column(db.String(1000), nullable=False)
    schedule = db.Column(db.String(100), nullable=False)  # 5-field cron expression
    exclude_patterns = db.Column(db.Text)  # Newline-delimited globs
    pre_backup_commands = db.Column(db.Text)  # Newline-delimited remote commands
    enabled = db.Column(db.Boolean, default=True, nullable=False)
    versioning_enabled = db.Column(db.Boolean, default=False, nullable=False)
    versions_to_keep = db.Column(db.Integer, default=5, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    # Relationships
    server = db.relationship('Server', back_populates='backup_configs')
    history = db.relationship('BackupHistory', back_populates='config', cascade='all, delete-orphan', lazy='dynamic')

    def __repr__(self):
        return f'<BackupConfig {self.name} schedule={self.schedule!r} enabled={self.enabled}>'


class BackupHistory(db.Model):
    """Backup execution history and logs"""
    __tablename__ = 'backup_history'

    id = db.Column(db.String(32), primary_key=True, default=_new_id)
    config_id = db.Column(db.String(32), db.ForeignKey('backup_configs.id', ondelete='CASCADE'), nullable=False)
    status = db.Column(db.String(20), nullable=False)  # running, success, failed
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    completed_at = db.Column(db.DateTime)
    file_count = db.Column(db.Integer)
    total_size = db.Column(db.BigInteger)  # In bytes
    transferred_size = db.Column(db.BigInteger)  # In bytes
    error_message = db.Column(db.Text)
    logs = db.Column(db.Text)  # Detailed execution logs

    # Relationship
    config = db.relationship('BackupConfig', back_populates='history')

    def __repr__(self):
        return f'<BackupHistory config_id={self.config_id} status={self.status}>'
