"""
Backup settings routes - destinations, retention and schedule configuration.

Values are stored as system settings in the "backup" group and override
the BACKUP_* config defaults. Secret values are never returned.
"""

import re
import logging
from flask import Blueprint, jsonify, request, current_app

from sourdough import db
from sourdough.auth import admin_required
from sourdough.backup import BackupService, BackupError, load_backup_config
from sourdough.backup.config import (
    SETTINGS_GROUP, SECRET_SETTINGS, SCHEDULE_FREQUENCIES, DESTINATION_NAMES, get_settings_store,
)
from sourdough.routes.backup_routes import error_response
from sourdough.scheduler import get_scheduled_jobs


bp = Blueprint('backup_settings', __name__, url_prefix='/api/backup/settings')
logger = logging.getLogger(__name__)

SECRET_MASK = '********'
TIME_RE = re.compile(r'^([01]\d|2[0-3]):[0-5]\d$')

# name -> (type, minimum, maximum)
EDITABLE_SETTINGS = {
    's3_enabled': (bool, None, None),
    's3_bucket': (str, None, None),
    's3_path': (str, None, None),
    's3_region': (str, None, None),
    's3_access_key_id': (str, None, None),
    's3_secret_access_key': (str, None, None),
    's3_endpoint': (str, None, None),
    'sftp_enabled': (bool, None, None),
    'sftp_host': (str, None, None),
    'sftp_port': (int, 1, 65535),
    'sftp_username': (str, None, None),
    'sftp_password': (str, None, None),
    'sftp_private_key': (str, None, None),
    'sftp_passphrase': (str, None, None),
    'sftp_path': (str, None, None),
    'gdrive_enabled': (bool, None, None),
    'gdrive_client_id': (str, None, None),
    'gdrive_client_secret': (str, None, None),
    'gdrive_refresh_token': (str, None, None),
    'gdrive_folder_id': (str, None, None),
    'retention_enabled': (bool, None, None),
    'retention_days': (int, 1, 3650),
    'retention_count': (int, 1, 1000),
    'min_backups': (int, 0, 1000),
    'schedule_enabled': (bool, None, None),
    'schedule_frequency': (str, None, None),
    'schedule_time': (str, None, None),
    'schedule_day': (int, 0, 6),
    'schedule_date': (int, 1, 31),
    'scheduled_destinations': (list, None, None),
    'encryption_enabled': (bool, None, None),
    'encryption_password': (str, None, None),
}


def _mask(value):
    return SECRET_MASK if value else None


def settings_view(config):
    """Flat settings payload for a BackupConfig, secrets masked."""
    s3 = config.destination('s3')
    sftp = config.destination('sftp')
    gdrive = config.destination('google_drive')
    retention = config.retention
    schedule = config.schedule

    return {
        's3_enabled': s3.enabled,
        's3_bucket': s3.get('bucket'),
        's3_path': s3.get('path'),
        's3_region': s3.get('region'),
        's3_access_key_id': s3.get('access_key_id'),
        's3_secret_access_key': _mask(s3.get('secret_access_key')),
        's3_endpoint': s3.get('endpoint'),
        'sftp_enabled': sftp.enabled,
        'sftp_host': sftp.get('host'),
        'sftp_port': sftp.get('port'),
        'sftp_username': sftp.get('username'),
        'sftp_password': _mask(sftp.get('password')),
        'sftp_private_key': _mask(sftp.get('private_key')),
        'sftp_passphrase': _mask(sftp.get('passphrase')),
        'sftp_path': sftp.get('path'),
        'gdrive_enabled': gdrive.enabled,
        'gdrive_client_id': gdrive.get('client_id'),
        'gdrive_client_secret': _mask(gdrive.get('client_secret')),
        'gdrive_refresh_token': _mask(gdrive.get('refresh_token')),
        'gdrive_folder_id': gdrive.get('folder_id'),
        'retention_enabled': retention.enabled,
        'retention_days': retention.keep_days,
        'retention_count': retention.keep_count,
        'min_backups': retention.min_backups,
        'schedule_enabled': schedule.enabled,
        'schedule_frequency': schedule.frequency,
        'schedule_time': schedule.time,
        'schedule_day': schedule.day_of_week,
        'schedule_date': schedule.day_of_month,
        'scheduled_destinations': list(schedule.destinations),
        'encryption_enabled': config.encryption_enabled,
        'encryption_password': _mask(config.encryption_password),
        'format_version': config.format_version,
    }


def validate_setting(name, value):
    """
    Coerce and check one submitted setting.

    Returns:
        (value, error message or None)
    """
    kind, minimum, maximum = EDITABLE_SETTINGS[name]

    if kind is bool:
        if not isinstance(value, bool):
            return None, f'{name} must be a boolean'
        return value, None

    if kind is int:
        if isinstance(value, bool) or not isinstance(value, int):
            return None, f'{name} must be an integer'
        if (minimum is not None and value < minimum) or (maximum is not None and value > maximum):
            return None, f'{name} must be between {minimum} and {maximum}'
        return value, None

    if kind is list:
        if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
            return None, f'{name} must be a list of destination names'
        unknown = [v for v in value if v not in DESTINATION_NAMES]
        if unknown:
            return None, f'Unknown destination(s): {", ".join(unknown)}'
        return value, None

    if not isinstance(value, str):
        return None, f'{name} must be a string'
    value = value.strip()
    if name == 'schedule_frequency' and value not in SCHEDULE_FREQUENCIES:
        return None, f'schedule_frequency must be one of {", ".join(SCHEDULE_FREQUENCIES)}'
    if name == 'schedule_time' and not TIME_RE.match(value):
        return None, 'schedule_time must be HH:MM'
    return value, None


@bp.route('', methods=['GET'])
@admin_required
def get_settings():
    config = load_backup_config(current_app._get_current_object())
    return jsonify({'settings': settings_view(config), 'scheduled_jobs': get_scheduled_jobs()})


@bp.route('', methods=['PUT'])
@admin_required
def update_settings():
    """
    Update backup settings.

    Request body: any subset of the editable settings. null resets a
    setting to its config default; a masked secret is left unchanged.
    """
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return jsonify({'error': 'JSON object required'}), 400

    unknown = sorted(set(data) - set(EDITABLE_SETTINGS))
    if unknown:
        return jsonify({'error': f'Unknown setting(s): {", ".join(unknown)}'}), 400

    updates = {}
    resets = []
    for name, value in data.items():
        if value is None:
            resets.append(name)
            continue
        if name in SECRET_SETTINGS and value == SECRET_MASK:
            continue
        coerced, error = validate_setting(name, value)
        if error:
            return jsonify({'error': error}), 400
        updates[name] = coerced

    app = current_app._get_current_object()
    store = get_settings_store(app)
    for name, value in updates.items():
        store.set(SETTINGS_GROUP, name, value, commit=False)
    db.session.commit()
    for name in resets:
        store.reset(SETTINGS_GROUP, name)

    logger.info(f"Backup settings updated: {', '.join(sorted(updates) + resets)}")
    _resync_schedule()

    return jsonify({'message': 'Backup settings updated', 'settings': settings_view(load_backup_config(app))})


@bp.route('/test/<destination>', methods=['POST'])
@admin_required
def test_destination(destination):
    """Probe one destination with the saved settings."""
    try:
        with BackupService(load_backup_config(current_app._get_current_object())) as service:
            available = service.check_destination(destination)
    except BackupError as e:
        return error_response(e)

    return jsonify({'destination': destination, 'available': available})


def _resync_schedule():
    from sourdough import scheduler as scheduler_module

    if scheduler_module.scheduler is None:
        return
    try:
        scheduler_module.sync_backup_schedule()
    except Exception as e:
        logger.error(f"Failed to resync backup schedule: {e}")
