import os
from datetime import timedelta


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_int(name, default):
    value = os.environ.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        return default


class Config:
    """Base configuration"""

    # Flask
    SECRET_KEY = os.environ.get('SECRET_KEY')
    if not SECRET_KEY:
        secret_file = '/data/.secret_key'
        if os.path.exists(secret_file):
            with open(secret_file, 'r') as f:
                SECRET_KEY = f.read().strip()
        else:
            import secrets
            SECRET_KEY = secrets.token_hex(32)
            print("WARNING: Using non-persistent SECRET_KEY. Set SECRET_KEY environment variable.")

    DATA_DIR = os.environ.get('DATA_DIR') or '/data'

    # Database
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL') or 'sqlite:////data/sourdough.db'
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    # Session
    PERMANENT_SESSION_LIFETIME = timedelta(hours=24)
    SESSION_COOKIE_HTTPONLY = True
    SESSION_COOKIE_SAMESITE = 'Lax'

    # Storage
    TEMP_DIR = os.environ.get('TEMP_DIR') or '/data/temp'
    PUBLIC_STORAGE_DIR = os.environ.get('PUBLIC_STORAGE_DIR') or '/data/storage/public'
    MAX_CONTENT_LENGTH = _env_int('MAX_UPLOAD_MB', 2048) * 1024 * 1024

    # Backup
    BACKUP_DISK_PATH = os.environ.get('BACKUP_DISK_PATH') or '/data/backups'
    BACKUP_LOCK_FILE = os.environ.get('BACKUP_LOCK_FILE') or '/data/temp/backup.lock'
    BACKUP_FORMAT_VERSION = '2.0'
    BACKUP_INCLUDE_DATABASE = True
    BACKUP_INCLUDE_FILES = True
    BACKUP_INCLUDE_SETTINGS = True

    BACKUP_RETENTION_ENABLED = _env_bool('BACKUP_RETENTION_ENABLED', True)
    BACKUP_RETENTION_DAYS = _env_int('BACKUP_RETENTION_DAYS', 30)
    BACKUP_RETENTION_COUNT = _env_int('BACKUP_RETENTION_COUNT', 10)
    BACKUP_MIN_BACKUPS = _env_int('BACKUP_MIN_BACKUPS', 5)

    BACKUP_SCHEDULE_ENABLED = _env_bool('BACKUP_SCHEDULE_ENABLED', False)
    BACKUP_SCHEDULE_FREQUENCY = os.environ.get('BACKUP_SCHEDULE_FREQUENCY', 'daily')  # daily, weekly, monthly
    BACKUP_SCHEDULE_TIME = os.environ.get('BACKUP_SCHEDULE_TIME', '02:00')
    BACKUP_SCHEDULE_DAY = _env_int('BACKUP_SCHEDULE_DAY', 0)  # 0=Sunday
    BACKUP_SCHEDULE_DATE = _env_int('BACKUP_SCHEDULE_DATE', 1)
    BACKUP_SCHEDULED_DESTINATIONS = os.environ.get('BACKUP_SCHEDULED_DESTINATIONS', 'local')

    # Remote destinations
    BACKUP_S3_ENABLED = _env_bool('BACKUP_S3_ENABLED', False)
    BACKUP_S3_BUCKET = os.environ.get('BACKUP_S3_BUCKET') or os.environ.get('AWS_BUCKET')
    BACKUP_S3_PATH = os.environ.get('BACKUP_S3_PATH', 'backups')
    BACKUP_S3_REGION = os.environ.get('AWS_DEFAULT_REGION', 'us-east-1')
    BACKUP_S3_ACCESS_KEY_ID = os.environ.get('AWS_ACCESS_KEY_ID')
    BACKUP_S3_SECRET_ACCESS_KEY = os.environ.get('AWS_SECRET_ACCESS_KEY')
    BACKUP_S3_ENDPOINT = os.environ.get('BACKUP_S3_ENDPOINT')

    BACKUP_SFTP_ENABLED = _env_bool('BACKUP_SFTP_ENABLED', False)
    BACKUP_SFTP_HOST = os.environ.get('BACKUP_SFTP_HOST')
    BACKUP_SFTP_PORT = _env_int('BACKUP_SFTP_PORT', 22)
    BACKUP_SFTP_USERNAME = os.environ.get('BACKUP_SFTP_USERNAME')
    BACKUP_SFTP_PASSWORD = os.environ.get('BACKUP_SFTP_PASSWORD')
    BACKUP_SFTP_PRIVATE_KEY = os.environ.get('BACKUP_SFTP_PRIVATE_KEY')
    BACKUP_SFTP_PASSPHRASE = os.environ.get('BACKUP_SFTP_PASSPHRASE')
    BACKUP_SFTP_PATH = os.environ.get('BACKUP_SFTP_PATH', '/backups')

    BACKUP_GDRIVE_ENABLED = _env_bool('BACKUP_GDRIVE_ENABLED', False)
    BACKUP_GDRIVE_CLIENT_ID = os.environ.get('BACKUP_GDRIVE_CLIENT_ID')
    BACKUP_GDRIVE_CLIENT_SECRET = os.environ.get('BACKUP_GDRIVE_CLIENT_SECRET')
    BACKUP_GDRIVE_REFRESH_TOKEN = os.environ.get('BACKUP_GDRIVE_REFRESH_TOKEN')
    BACKUP_GDRIVE_FOLDER_ID = os.environ.get('BACKUP_GDRIVE_FOLDER_ID')

    # Passed through untouched; key management is not handled here
    BACKUP_ENCRYPTION_ENABLED = _env_bool('BACKUP_ENCRYPTION_ENABLED', False)
    BACKUP_ENCRYPTION_PASSWORD = os.environ.get('BACKUP_ENCRYPTION_PASSWORD')

    # Scheduler
    SCHEDULER_ENABLED = True
    SCHEDULER_TIMEZONE = 'UTC'


class DevelopmentConfig(Config):
    """Development configuration"""
    DEBUG = True
    SQLALCHEMY_ECHO = True

    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    DATA_DIR = os.path.join(BASE_DIR, 'data')
    SQLALCHEMY_DATABASE_URI = f'sqlite:///{os.path.join(DATA_DIR, "sourdough.db")}'
    TEMP_DIR = os.path.join(DATA_DIR, 'temp')
    PUBLIC_STORAGE_DIR = os.path.join(DATA_DIR, 'storage', 'public')
    BACKUP_DISK_PATH = os.path.join(DATA_DIR, 'backups')
    BACKUP_LOCK_FILE = os.path.join(DATA_DIR, 'temp', 'backup.lock')


class TestingConfig(DevelopmentConfig):
    """Testing configuration (paths are normally overridden per test)"""
    TESTING = True
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SECRET_KEY = 'test-secret-key'
    SCHEDULER_ENABLED = False


class ProductionConfig(Config):
    """Production configuration"""
    DEBUG = False
    SQLALCHEMY_ECHO = False

    SESSION_COOKIE_SECURE = os.environ.get('HTTPS_ENABLED', 'false').lower() == 'true'


config = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
    'default': ProductionConfig
}
