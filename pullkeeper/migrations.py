"""
Database migrations for pullkeeper.

Simple migration system to handle schema changes without requiring Alembic.
"""

import json
import logging
from sqlalchemy import text, inspect
from pullkeeper import db

logger = logging.getLogger(__name__)


# Columns added after the initial schema: (table, column, DDL fragment)
ADDED_COLUMNS = [
    ('servers', 'ssh_key_id', 'VARCHAR(32) REFERENCES ssh_keys(id) ON DELETE SET NULL'),
    ('servers', 'system_key_path', 'VARCHAR(500)'),
    ('backup_configs', 'pre_backup_commands', 'TEXT'),
    ('backup_configs', 'versioning_enabled', 'BOOLEAN NOT NULL DEFAULT 0'),
    ('backup_configs', 'versions_to_keep', 'INTEGER NOT NULL DEFAULT 5'),
]


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Creates any missing tables, then adds columns that older databases lack.
    Safe to call from several gunicorn workers at once.
    """
    with app.app_context():
        inspector = inspect(db.engine)
        existing_tables = inspector.get_table_names()

        if not existing_tables:
            logger.info("No tables found - creating initial database schema")
        try:
            db.create_all()
        except Exception as e:
            # Another worker may have created the tables first
            logger.error(f"Failed to create database schema: {e}")

        if existing_tables:
            run_migrations(app, inspect(db.engine))


def run_migrations(app, inspector=None):
    """
    Run all necessary database migrations.

    This function checks the database schema and applies any missing changes.
    """
    if inspector is None:
        inspector = inspect(db.engine)

    tables = inspector.get_table_names()

    for table, column, ddl in ADDED_COLUMNS:
        if table not in tables:
            continue

        columns = [col['name'] for col in inspector.get_columns(table)]
        if column in columns:
            continue

        logger.info(f"Running migration: Adding {column} column to {table} table")
        try:
            db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            db.session.commit()
            logger.info(f"Successfully added {column} column")
        except Exception as e:
            logger.error(f"Failed to add {column} column: {e}")
            db.session.rollback()

    if 'backup_configs' in tables:
        _migrate_json_exclude_patterns()


def _migrate_json_exclude_patterns():
    """
    Rewrite exclude patterns stored as a JSON array into newline-delimited text.

    Early releases stored the pattern list as JSON; rows that do not parse as a
    JSON list are already in the newline format and are left untouched.
    """
    from pullkeeper.models import BackupConfig

    migrated_count = 0

    for config in BackupConfig.query.filter(BackupConfig.exclude_patterns.isnot(None)).all():
        raw = config.exclude_patterns.strip()
        if not raw.startswith('['):
            continue

        try:
            patterns = json.loads(raw)
        except ValueError:
            continue

        if not isinstance(patterns, list):
            continue

        config.exclude_patterns = '\n'.join(str(p) for p in patterns if p)
        migrated_count += 1
        logger.info(f"Migrated exclude patterns for backup '{config.name}'")

    if not migrated_count:
        return

    try:
        db.session.commit()
        logger.info(f"Exclude pattern migration complete: {migrated_count} migrated")
    except Exception as e:
        logger.error(f"Failed to commit exclude pattern migration: {e}")
        db.session.rollback()
