"""
Unit tests for the additive schema migrations (sourdough/migrations.py).
"""

from sqlalchemy import inspect, text

from sourdough.migrations import run_migrations, upgrade_schema


def legacy_users_table(db):
    """Drop everything and recreate users as the first release laid it out."""
    db.drop_all()
    db.session.execute(text(
        "CREATE TABLE users (id INTEGER PRIMARY KEY, name VARCHAR(255) NOT NULL, "
        "email VARCHAR(255) NOT NULL UNIQUE, password_hash VARCHAR(255), "
        "created_at DATETIME NOT NULL, updated_at DATETIME NOT NULL)"
    ))
    db.session.commit()


class TestMigrations:
    """Test schema creation and column additions."""

    def test_current_schema_needs_nothing(self, db):
        assert run_migrations() == []
        assert upgrade_schema() == []

    def test_missing_column_is_added(self, db):
        legacy_users_table(db)

        applied = upgrade_schema()

        assert applied == ['users.is_admin']
        columns = [col['name'] for col in inspect(db.engine).get_columns('users')]
        assert 'is_admin' in columns
        assert 'ai_providers' in inspect(db.engine).get_table_names()

    def test_existing_rows_get_default(self, db):
        legacy_users_table(db)
        db.session.execute(text(
            "INSERT INTO users (id, name, email, created_at, updated_at) "
            "VALUES (1, 'Old', 'old@example.com', '2020-01-01 00:00:00', '2020-01-01 00:00:00')"
        ))
        db.session.commit()

        upgrade_schema()

        assert db.session.execute(text("SELECT is_admin FROM users WHERE id = 1")).scalar() == 0

    def test_migrations_are_idempotent(self, db):
        legacy_users_table(db)

        assert upgrade_schema() == ['users.is_admin']
        assert upgrade_schema() == []
