"""
Database migrations for Sourdough.

Simple additive migration system. Besides application startup, it runs after
an embedded database file has been restored from a backup, since that file
may carry the schema of an older release.
"""

import logging
from sqlalchemy import text, inspect
from sourdough import db

logger = logging.getLogger(__name__)

# (table, column, DDL type) added after the first release
ADDITIVE_COLUMNS = [
    ('users', 'is_admin', 'BOOLEAN NOT NULL DEFAULT 0'),
    ('settings', 'is_encrypted', 'BOOLEAN NOT NULL DEFAULT 0'),
    ('ai_providers', 'api_key_required', 'BOOLEAN NOT NULL DEFAULT 0'),
    ('ai_providers', 'is_primary', 'BOOLEAN NOT NULL DEFAULT 0'),
]


def init_database_schema(app):
    """
    Initialize database schema and run migrations.

    Safe to call from multiple Gunicorn workers: table creation is
    check-first and a worker losing the race only logs the error.
    """
    with app.app_context():
        upgrade_schema()


def upgrade_schema():
    """
    Create missing tables and add missing columns.

    Must be called inside an application context.

    Returns:
        List of applied migration descriptions
    """
    inspector = inspect(db.engine)
    existing_tables = inspector.get_table_names()

    if not existing_tables:
        logger.info("No tables found - creating initial database schema")

    try:
        db.create_all()
    except Exception as e:
        logger.error(f"Failed to create database schema: {e}")

    return run_migrations(inspect(db.engine))


def run_migrations(inspector=None):
    """
    Add columns introduced after the first release.

    Returns:
        List of applied migration descriptions
    """
    if inspector is None:
        inspector = inspect(db.engine)

    applied = []
    tables = inspector.get_table_names()

    for table, column, ddl in ADDITIVE_COLUMNS:
        if table not in tables:
            continue

        columns = [col['name'] for col in inspector.get_columns(table)]
        if column in columns:
            continue

        logger.info(f"Running migration: Adding {column} column to {table} table")
        try:
            db.session.execute(text(f"ALTER TABLE {table} ADD COLUMN {column} {ddl}"))
            db.session.commit()
            applied.append(f"{table}.{column}")
            logger.info(f"Successfully added {column} column")
        except Exception as e:
            logger.error(f"Failed to add {column} column: {e}")
            db.session.rollback()

    return applied
