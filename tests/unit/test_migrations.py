"""
Unit tests for schema migrations (pullkeeper/migrations.py).
"""

from sqlalchemy import inspect, text

from pullkeeper.migrations import run_migrations
from pullkeeper.models import BackupConfig


OLD_BACKUP_CONFIGS = """
CREATE TABLE backup_configs (
    id VARCHAR(32) PRIMARY KEY,
    server_id VARCHAR(32) NOT NULL,
    name VARCHAR(255) NOT NULL,
    source_path VARCHAR(1000) NOT NULL,
    destination_path VARCHAR(1000) NOT NULL,
    schedule VARCHAR(100) NOT NULL,
    exclude_patterns TEXT,
    enabled BOOLEAN NOT NULL,
    created_at DATETIME NOT NULL,
    updated_at DATETIME NOT NULL
)
"""


class TestRunMigrations:
    """Test additive column migrations on an old schema."""

    def test_adds_missing_columns(self, app, db):
        db.session.execute(text('DROP TABLE backup_history'))
        db.session.execute(text('DROP TABLE backup_configs'))
        db.session.execute(text(OLD_BACKUP_CONFIGS))
        db.session.execute(text(
            "INSERT INTO backup_configs VALUES ('c1', 's1', 'www', '/var/www', '/backups', "
            "'0 2 * * *', '[\"*.log\", \"cache\"]', 1, '2024-01-01 00:00:00', '2024-01-01 00:00:00')"
        ))
        db.session.commit()

        run_migrations(app)

        columns = {col['name'] for col in inspect(db.engine).get_columns('backup_configs')}
        assert {'pre_backup_commands', 'versioning_enabled', 'versions_to_keep'} <= columns

        db.session.expire_all()
        config = db.session.get(BackupConfig, 'c1')
        assert config.versions_to_keep == 5
        assert config.versioning_enabled is False
        assert config.exclude_patterns == '*.log\ncache'

    def test_current_schema_is_untouched(self, app, db, backup_config):
        run_migrations(app)

        db.session.expire_all()
        assert db.session.get(BackupConfig, backup_config.id).exclude_patterns == '*.log\nnode_modules'
