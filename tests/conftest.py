"""
Shared pytest fixtures for Sourdough tests.

This module provides fixtures for:
- Flask app and test client
- Database setup with in-memory SQLite
- User, setting and AI provider rows
- Backup configuration and service bound to temporary directories
- Public storage file tree
- Mock fixtures for external services (S3, SFTP)
"""

from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from sourdough import create_app, db as _db
from sourdough.models import User, Setting, AIProvider
from sourdough.auth import hash_password
from sourdough.backup import BackupService, load_backup_config


def make_app(tmp_path, **overrides):
    """Testing app whose data directories all live under tmp_path."""
    data_dir = tmp_path / 'data'
    config = {
        'DATA_DIR': str(data_dir),
        'TEMP_DIR': str(data_dir / 'temp'),
        'PUBLIC_STORAGE_DIR': str(data_dir / 'storage' / 'public'),
        'BACKUP_DISK_PATH': str(data_dir / 'backups'),
        'BACKUP_LOCK_FILE': str(data_dir / 'temp' / 'backup.lock'),
        'BACKUP_RETENTION_ENABLED': False,
        'BACKUP_S3_ENABLED': False,
        'BACKUP_SFTP_ENABLED': False,
        'BACKUP_GDRIVE_ENABLED': False,
    }
    config.update(overrides)
    return create_app('testing', overrides=config)


@pytest.fixture(scope='function')
def app(tmp_path):
    """
    Create Flask app with test configuration.

    Uses in-memory SQLite database for fast, isolated tests.
    """
    yield make_app(tmp_path)


@pytest.fixture(scope='function')
def db(app):
    """
    Database with all tables, inside an app context.

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
def admin_user(db):
    """
    Create an admin user for testing authentication.

    Email: admin@example.com
    Password: Admin123
    """
    user = User(
        name='Admin',
        email='admin@example.com',
        password_hash=hash_password('Admin123'),
        is_admin=True
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def regular_user(db):
    """Non-admin user. Password: User1234"""
    user = User(
        name='Regular',
        email='user@example.com',
        password_hash=hash_password('User1234'),
        is_admin=False
    )
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture(scope='function')
def logged_in_client(client, admin_user):
    """Test client with an authenticated admin session."""
    response = client.post('/api/auth/login', json={'email': 'admin@example.com', 'password': 'Admin123'})
    assert response.status_code == 200
    return client


@pytest.fixture(scope='function')
def seeded_data(db, admin_user):
    """
    One user setting, one system setting and one AI provider with an API key.
    """
    theme = Setting(user_id=admin_user.id, key='ui.theme', value='"dark"')
    site = Setting(user_id=None, key='general.site_name', value='"Sourdough"')
    provider = AIProvider(
        user_id=admin_user.id,
        provider='openai',
        model='gpt-4o',
        api_key='sk-test-123',
        is_enabled=True,
        is_primary=True
    )
    db.session.add_all([theme, site, provider])
    db.session.commit()
    return {'user': admin_user, 'settings': [theme, site], 'provider': provider}


@pytest.fixture
def public_files(app):
    """
    Files under the public storage root.

    Creates:
    - logo.png
    - avatars/1.txt
    - avatars/nested/2.txt
    """
    from pathlib import Path

    root = Path(app.config['PUBLIC_STORAGE_DIR'])
    (root / 'avatars' / 'nested').mkdir(parents=True, exist_ok=True)
    (root / 'logo.png').write_bytes(b'\x89PNG\r\n\x1a\n' + bytes(range(256)))
    (root / 'avatars' / '1.txt').write_text('avatar one')
    (root / 'avatars' / 'nested' / '2.txt').write_text('avatar two')
    return root


@pytest.fixture
def backup_config(app, db):
    """BackupConfig for the test app (local destination only)."""
    return load_backup_config(app)


@pytest.fixture
def backup_service(backup_config):
    with BackupService(backup_config) as service:
        yield service


@pytest.fixture
def clear_tables(db):
    """Callable deleting every row from the backed-up tables, children first."""
    from sourdough.models import Notification, SocialAccount

    def clear():
        for model in (AIProvider, Notification, SocialAccount, Setting, User):
            db.session.query(model).delete()
        db.session.commit()

    return clear


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient for SFTP testing.

    Returns the patched class; its instance's open_sftp() returns a MagicMock.
    """
    with patch('sourdough.backup.destinations.sftp.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    import sourdough.scheduler as scheduler_module

    with patch('sourdough.scheduler.BackgroundScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.state = 0
        scheduler_instance.get_jobs.return_value = []
        scheduler_instance.get_job.return_value = None

        yield scheduler_instance

    scheduler_module.scheduler = None
    scheduler_module.flask_app = None


@pytest.fixture
def app_factory(tmp_path):
    """Build another testing app sharing tmp_path, with config overrides."""
    def factory(**overrides):
        return make_app(tmp_path, **overrides)
    return factory
