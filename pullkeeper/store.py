"""
Store boundary between the database models and the backup engine.

Rows are converted once into frozen dataclasses and validated here, so the
scheduler and executor never touch ORM objects or untyped dicts. Every lookup
hits the database; nothing is cached, so credential and path edits take effect
on the next run.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from pullkeeper import db
from pullkeeper.errors import ConfigurationError
from pullkeeper.models import BackupConfig, BackupHistory, Server

logger = logging.getLogger(__name__)

MIN_VERSIONS_TO_KEEP = 1
MAX_VERSIONS_TO_KEEP = 100


@dataclass(frozen=True)
class StoredKey:
    id: str
    name: str
    private_key_path: Optional[str] = None
    private_key_content: Optional[str] = None


@dataclass(frozen=True)
class ServerSpec:
    id: str
    name: str
    host: str
    port: int
    username: str
    password: Optional[str] = field(default=None, repr=False)
    stored_key: Optional[StoredKey] = field(default=None, repr=False)
    system_key_path: Optional[str] = None
    private_key: Optional[str] = field(default=None, repr=False)

    @property
    def address(self) -> str:
        return f"{self.username}@{self.host}:{self.port}"


@dataclass(frozen=True)
class BackupConfiguration:
    id: str
    name: str
    server: ServerSpec
    source_path: str
    destination_path: str
    schedule: str
    exclude_patterns: List[str] = field(default_factory=list)
    pre_backup_commands: List[str] = field(default_factory=list)
    enabled: bool = True
    versioning_enabled: bool = False
    versions_to_keep: int = 5


def split_lines(value: Optional[str]) -> List[str]:
    """Split a newline-delimited column into stripped, non-empty entries."""
    if not value:
        return []
    return [line.strip() for line in value.splitlines() if line.strip()]


def server_from_model(server: Server) -> ServerSpec:
    stored_key = None
    if server.ssh_key is not None:
        stored_key = StoredKey(
            id=server.ssh_key.id,
            name=server.ssh_key.name,
            private_key_path=server.ssh_key.private_key_path or None,
            private_key_content=server.ssh_key.private_key_content or None,
        )

    return ServerSpec(
        id=server.id,
        name=server.name,
        host=server.host,
        port=server.port or 22,
        username=server.username,
        password=server.password or None,
        stored_key=stored_key,
        system_key_path=server.system_key_path or None,
        private_key=server.private_key or None,
    )


def config_from_model(config: BackupConfig) -> BackupConfiguration:
    """
    Convert a BackupConfig row into a validated BackupConfiguration.

    Raises:
        ConfigurationError: If the row is missing its server or a required path,
            or versions_to_keep is outside 1..100
    """
    if config.server is None:
        raise ConfigurationError(f"Backup '{config.name}' has no server")

    if not (config.source_path or '').strip():
        raise ConfigurationError(f"Backup '{config.name}' has no source path")

    if not (config.destination_path or '').strip():
        raise ConfigurationError(f"Backup '{config.name}' has no destination path")

    versions_to_keep = config.versions_to_keep if config.versions_to_keep is not None else 5
    if not MIN_VERSIONS_TO_KEEP <= versions_to_keep <= MAX_VERSIONS_TO_KEEP:
        raise ConfigurationError(
            f"Backup '{config.name}': versions to keep must be between "
            f"{MIN_VERSIONS_TO_KEEP} and {MAX_VERSIONS_TO_KEEP}, got {versions_to_keep}"
        )

    return BackupConfiguration(
        id=config.id,
        name=config.name,
        server=server_from_model(config.server),
        source_path=config.source_path.strip(),
        destination_path=config.destination_path.strip(),
        schedule=(config.schedule or '').strip(),
        exclude_patterns=split_lines(config.exclude_patterns),
        pre_backup_commands=split_lines(config.pre_backup_commands),
        enabled=bool(config.enabled),
        versioning_enabled=bool(config.versioning_enabled),
        versions_to_keep=versions_to_keep,
    )


def find_config(config_id: str) -> Optional[BackupConfiguration]:
    """Load one configuration with its server, or None if it does not exist."""
    config = db.session.get(BackupConfig, config_id)
    if config is None:
        return None
    return config_from_model(config)


def find_enabled_configs() -> List[BackupConfiguration]:
    """
    Load every enabled configuration with its server.

    Rows that fail validation are logged and skipped so one broken row cannot
    keep the rest from being scheduled.
    """
    configs = []
    for row in BackupConfig.query.filter_by(enabled=True).order_by(BackupConfig.created_at).all():
        try:
            configs.append(config_from_model(row))
        except ConfigurationError as e:
            logger.error(f"Skipping invalid backup configuration {row.id}: {e}")
    return configs


def find_server(server_id: str) -> Optional[ServerSpec]:
    server = db.session.get(Server, server_id)
    if server is None:
        return None
    return server_from_model(server)


def config_exists(config_id: str) -> bool:
    return db.session.get(BackupConfig, config_id) is not None


def is_enabled(config_id: str) -> Optional[bool]:
    """Enabled flag of a configuration, or None if it does not exist."""
    config = db.session.get(BackupConfig, config_id)
    if config is None:
        return None
    return bool(config.enabled)


def insert_history(config_id: str, status: str, started_at: datetime) -> str:
    """Insert a history row and return its id."""
    entry = BackupHistory(config_id=config_id, status=status, started_at=started_at)
    db.session.add(entry)
    db.session.commit()
    return entry.id


def update_history(history_id: str, fields: Dict[str, Any], expected_status: Optional[str] = None) -> bool:
    """
    Update a single history row.

    When expected_status is given, the row is only updated if it is still in that
    status; the check and the write are one UPDATE statement.

    Returns:
        True if a row was updated
    """
    query = BackupHistory.query.filter(BackupHistory.id == history_id)
    if expected_status is not None:
        query = query.filter(BackupHistory.status == expected_status)

    updated = query.update(fields, synchronize_session=False)
    db.session.commit()
    return updated > 0
