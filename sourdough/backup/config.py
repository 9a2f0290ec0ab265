"""
Backup configuration value objects.

BackupService never reads Flask config or the settings table directly; it
receives one immutable BackupConfig built by load_backup_config().
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Tuple

logger = logging.getLogger(__name__)

SETTINGS_GROUP = 'backup'

DESTINATION_NAMES = ('local', 's3', 'sftp', 'google_drive')

# Stored encrypted in the settings table
SECRET_SETTINGS = (
    's3_secret_access_key',
    'sftp_password',
    'sftp_private_key',
    'sftp_passphrase',
    'gdrive_client_secret',
    'gdrive_refresh_token',
    'encryption_password',
)

SCHEDULE_FREQUENCIES = ('daily', 'weekly', 'monthly')


@dataclass(frozen=True)
class DestinationConfig:
    """Connection parameters for one destination."""
    name: str
    enabled: bool = False
    options: Mapping[str, Any] = field(default_factory=dict)

    def get(self, key: str, default: Any = None) -> Any:
        value = self.options.get(key)
        return default if value in (None, '') else value


@dataclass(frozen=True)
class RetentionPolicy:
    """
    Retention parameters. None disables a criterion; a policy with both
    keep_days and keep_count unset never deletes anything.
    """
    enabled: bool = False
    keep_days: Optional[int] = None
    keep_count: Optional[int] = None
    min_backups: int = 0

    @property
    def is_active(self) -> bool:
        return self.enabled and (self.keep_days is not None or self.keep_count is not None)


@dataclass(frozen=True)
class ScheduleConfig:
    enabled: bool = False
    frequency: str = 'daily'
    time: str = '02:00'
    day_of_week: int = 0
    day_of_month: int = 1
    destinations: Tuple[str, ...] = ('local',)
    include_database: bool = True
    include_files: bool = True
    include_settings: bool = True


@dataclass(frozen=True)
class BackupConfig:
    """Everything BackupService needs to run."""
    backup_dir: str
    temp_dir: str
    public_storage_dir: str
    lock_file: str
    format_version: str = '2.0'
    app_version: str = '0.0.0'
    destinations: Tuple[DestinationConfig, ...] = ()
    retention: RetentionPolicy = field(default_factory=RetentionPolicy)
    schedule: ScheduleConfig = field(default_factory=ScheduleConfig)
    encryption_enabled: bool = False
    encryption_password: Optional[str] = None

    def destination(self, name: str) -> Optional[DestinationConfig]:
        for dest in self.destinations:
            if dest.name == name:
                return dest
        return None

    @property
    def enabled_destinations(self) -> Tuple[DestinationConfig, ...]:
        return tuple(d for d in self.destinations if d.enabled)


def _as_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    return str(value).strip().lower() in ('1', 'true', 'yes', 'on')


def _as_int(value: Any, default: Optional[int], minimum: int = 0) -> Optional[int]:
    if value is None or value == '':
        return default
    try:
        number = int(value)
    except (TypeError, ValueError):
        logger.warning(f"Ignoring non-integer backup setting value: {value!r}")
        return default
    if number < minimum:
        logger.warning(f"Ignoring out-of-range backup setting value: {value!r}")
        return default
    return number


def _split_names(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, (list, tuple)):
        items = value
    else:
        items = str(value).split(',')
    return tuple(name.strip() for name in items if name and name.strip())


def build_backup_config(defaults: Mapping[str, Any], overrides: Optional[Mapping[str, Any]] = None,
                        app_version: str = '0.0.0') -> BackupConfig:
    """
    Merge Flask config defaults with stored setting overrides.

    Args:
        defaults: Flask config mapping (BACKUP_* keys and directories)
        overrides: Short-name settings from the "backup" group
        app_version: Application version recorded in manifests

    Returns:
        BackupConfig; missing values degrade to local-only, no retention
    """
    s = dict(overrides or {})

    def pick(setting_name, config_key, default=None):
        if setting_name in s and s[setting_name] not in (None, ''):
            return s[setting_name]
        value = defaults.get(config_key)
        return default if value is None else value

    def pick_int(setting_name, config_key, default=None, minimum=0):
        fallback = _as_int(defaults.get(config_key), default, minimum)
        return _as_int(s.get(setting_name), fallback, minimum)

    backup_dir = s.get('disk') or defaults.get('BACKUP_DISK_PATH')

    local = DestinationConfig('local', True, {'path': backup_dir})
    s3 = DestinationConfig('s3', _as_bool(pick('s3_enabled', 'BACKUP_S3_ENABLED'), False), {
        'bucket': pick('s3_bucket', 'BACKUP_S3_BUCKET'),
        'path': pick('s3_path', 'BACKUP_S3_PATH', 'backups'),
        'region': pick('s3_region', 'BACKUP_S3_REGION', 'us-east-1'),
        'access_key_id': pick('s3_access_key_id', 'BACKUP_S3_ACCESS_KEY_ID'),
        'secret_access_key': pick('s3_secret_access_key', 'BACKUP_S3_SECRET_ACCESS_KEY'),
        'endpoint': pick('s3_endpoint', 'BACKUP_S3_ENDPOINT'),
    })
    sftp = DestinationConfig('sftp', _as_bool(pick('sftp_enabled', 'BACKUP_SFTP_ENABLED'), False), {
        'host': pick('sftp_host', 'BACKUP_SFTP_HOST'),
        'port': pick_int('sftp_port', 'BACKUP_SFTP_PORT', 22, minimum=1),
        'username': pick('sftp_username', 'BACKUP_SFTP_USERNAME'),
        'password': pick('sftp_password', 'BACKUP_SFTP_PASSWORD'),
        'private_key': pick('sftp_private_key', 'BACKUP_SFTP_PRIVATE_KEY'),
        'passphrase': pick('sftp_passphrase', 'BACKUP_SFTP_PASSPHRASE'),
        'path': pick('sftp_path', 'BACKUP_SFTP_PATH', '/backups'),
    })
    gdrive = DestinationConfig('google_drive', _as_bool(pick('gdrive_enabled', 'BACKUP_GDRIVE_ENABLED'), False), {
        'client_id': pick('gdrive_client_id', 'BACKUP_GDRIVE_CLIENT_ID'),
        'client_secret': pick('gdrive_client_secret', 'BACKUP_GDRIVE_CLIENT_SECRET'),
        'refresh_token': pick('gdrive_refresh_token', 'BACKUP_GDRIVE_REFRESH_TOKEN'),
        'folder_id': pick('gdrive_folder_id', 'BACKUP_GDRIVE_FOLDER_ID'),
    })

    retention = RetentionPolicy(
        enabled=_as_bool(pick('retention_enabled', 'BACKUP_RETENTION_ENABLED'), False),
        keep_days=pick_int('retention_days', 'BACKUP_RETENTION_DAYS'),
        keep_count=pick_int('retention_count', 'BACKUP_RETENTION_COUNT'),
        min_backups=pick_int('min_backups', 'BACKUP_MIN_BACKUPS', 0),
    )

    frequency = pick('schedule_frequency', 'BACKUP_SCHEDULE_FREQUENCY', 'daily')
    if frequency not in SCHEDULE_FREQUENCIES:
        logger.warning(f"Unknown backup schedule frequency '{frequency}', using daily")
        frequency = 'daily'

    scheduled = _split_names(pick('scheduled_destinations', 'BACKUP_SCHEDULED_DESTINATIONS', 'local'))
    scheduled = tuple(name for name in scheduled if name in DESTINATION_NAMES) or ('local',)

    schedule = ScheduleConfig(
        enabled=_as_bool(pick('schedule_enabled', 'BACKUP_SCHEDULE_ENABLED'), False),
        frequency=frequency,
        time=str(pick('schedule_time', 'BACKUP_SCHEDULE_TIME', '02:00')),
        day_of_week=pick_int('schedule_day', 'BACKUP_SCHEDULE_DAY', 0),
        day_of_month=pick_int('schedule_date', 'BACKUP_SCHEDULE_DATE', 1, minimum=1),
        destinations=scheduled,
        include_database=_as_bool(defaults.get('BACKUP_INCLUDE_DATABASE'), True),
        include_files=_as_bool(defaults.get('BACKUP_INCLUDE_FILES'), True),
        include_settings=_as_bool(defaults.get('BACKUP_INCLUDE_SETTINGS'), True),
    )

    return BackupConfig(
        backup_dir=backup_dir,
        temp_dir=defaults.get('TEMP_DIR'),
        public_storage_dir=defaults.get('PUBLIC_STORAGE_DIR'),
        lock_file=defaults.get('BACKUP_LOCK_FILE'),
        format_version=str(defaults.get('BACKUP_FORMAT_VERSION') or '2.0'),
        app_version=app_version,
        destinations=(local, s3, sftp, gdrive),
        retention=retention,
        schedule=schedule,
        encryption_enabled=_as_bool(pick('encryption_enabled', 'BACKUP_ENCRYPTION_ENABLED'), False),
        encryption_password=pick('encryption_password', 'BACKUP_ENCRYPTION_PASSWORD'),
    )


def get_settings_store(app):
    """SettingsStore for the backup group with its secrets registered."""
    from sourdough.settings import SettingsStore
    from sourdough.utils.crypto import get_secret_cipher

    secret_keys = [f"{SETTINGS_GROUP}.{name}" for name in SECRET_SETTINGS]
    return SettingsStore(get_secret_cipher(app), secret_keys)


def load_backup_config(app) -> BackupConfig:
    """
    Build the BackupConfig for a Flask app. Must run in an app context.

    A broken settings table is logged and ignored so backups still run
    with the file-based defaults.
    """
    from sourdough import __version__

    try:
        overrides = get_settings_store(app).get_group(SETTINGS_GROUP)
    except Exception as e:
        logger.error(f"Failed to read backup settings, using defaults: {e}")
        overrides = {}

    return build_backup_config(app.config, overrides, app_version=__version__)
