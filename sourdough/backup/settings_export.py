"""
settings.json export and idempotent import.

The export holds users (without password hashes), every settings row and
AI provider records with their API keys stripped. Import matches users by
email, remaps user ids, and upserts settings by (user_id, key) and
providers by (user_id, provider), so restoring the same archive twice
leaves one row per key.
"""

import json
import logging
from typing import Dict, Optional

from sourdough import db
from sourdough.models import User, Setting, AIProvider
from .errors import InvalidArchive

logger = logging.getLogger(__name__)

USER_FIELDS = ('id', 'name', 'email', 'is_admin', 'created_at', 'updated_at')
SETTING_FIELDS = ('id', 'user_id', 'key', 'value', 'is_encrypted', 'created_at', 'updated_at')
PROVIDER_FIELDS = ('id', 'user_id', 'provider', 'model', 'is_enabled', 'is_primary', 'created_at', 'updated_at')

SECTION_KEYS = ('users', 'settings', 'ai_providers')


def _serialize(record, fields) -> dict:
    data = {}
    for name in fields:
        value = getattr(record, name)
        data[name] = value.isoformat() if hasattr(value, 'isoformat') else value
    return data


def export_settings() -> dict:
    """Snapshot users, settings and AI providers. Must run in an app context."""
    providers = []
    for provider in AIProvider.query.order_by(AIProvider.id).all():
        data = _serialize(provider, PROVIDER_FIELDS)
        # Keys are never exported; the administrator re-enters them
        data['api_key_required'] = True
        providers.append(data)

    return {
        'users': [_serialize(u, USER_FIELDS) for u in User.query.order_by(User.id).all()],
        'settings': [_serialize(s, SETTING_FIELDS) for s in Setting.query.order_by(Setting.id).all()],
        'ai_providers': providers,
    }


def parse_settings_section(data: bytes) -> dict:
    """
    Decode and shape-check a settings.json section.

    Raises:
        InvalidArchive: If the section is not a JSON object of lists of objects
    """
    try:
        payload = json.loads(data.decode('utf-8'))
    except (UnicodeDecodeError, ValueError) as e:
        raise InvalidArchive(f"Invalid backup: settings section is not valid JSON ({e})", section='settings')

    if not isinstance(payload, dict):
        raise InvalidArchive("Invalid backup: settings section is not an object", section='settings')

    for key in SECTION_KEYS:
        items = payload.get(key, [])
        if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
            raise InvalidArchive(f"Invalid backup: settings.{key} is not a list of objects", section='settings')

    return payload


def import_settings(payload: dict) -> Dict[str, int]:
    """
    Upsert an exported settings snapshot into the current session.

    The caller owns the transaction; nothing is committed here.

    Returns:
        Counts of users created/matched and settings/providers upserted
    """
    summary = {'users_created': 0, 'users_matched': 0, 'settings': 0, 'ai_providers': 0, 'skipped': 0}
    user_ids = _import_users(payload.get('users', []), summary)

    for item in payload.get('settings', []):
        key = item.get('key')
        user_id = _map_user(item.get('user_id'), user_ids)
        if not key or user_id is False:
            logger.warning(f"Skipping setting with unknown key or owner: {key!r}")
            summary['skipped'] += 1
            continue

        record = Setting.query.filter(_owner_filter(Setting, user_id), Setting.key == key).first()
        if record is None:
            record = Setting(user_id=user_id, key=key)
            db.session.add(record)
        record.value = item.get('value')
        record.is_encrypted = bool(item.get('is_encrypted', False))
        summary['settings'] += 1

    for item in payload.get('ai_providers', []):
        name = item.get('provider')
        user_id = _map_user(item.get('user_id'), user_ids)
        if not name or user_id is False:
            logger.warning(f"Skipping AI provider with unknown name or owner: {name!r}")
            summary['skipped'] += 1
            continue

        record = AIProvider.query.filter(_owner_filter(AIProvider, user_id), AIProvider.provider == name).first()
        if record is None:
            record = AIProvider(user_id=user_id, provider=name)
            db.session.add(record)
        record.model = item.get('model')
        record.is_enabled = bool(item.get('is_enabled', True))
        record.is_primary = bool(item.get('is_primary', False))
        # An existing key is kept; a provider without one must be reconfigured
        record.api_key_required = not record.api_key
        summary['ai_providers'] += 1

    db.session.flush()
    return summary


def _import_users(items, summary) -> Dict[int, int]:
    """Match or create users by email; returns exported id -> local id."""
    mapping = {}
    for item in items:
        email = (item.get('email') or '').strip()
        if not email:
            summary['skipped'] += 1
            continue

        user = User.query.filter_by(email=email).first()
        if user is None:
            user = User(
                name=item.get('name') or email,
                email=email,
                is_admin=bool(item.get('is_admin', False)),
                password_hash=None,
            )
            db.session.add(user)
            db.session.flush()
            summary['users_created'] += 1
            logger.info(f"Created user {email} from backup (password reset required)")
        else:
            summary['users_matched'] += 1

        if item.get('id') is not None:
            mapping[item['id']] = user.id
    return mapping


def _map_user(exported_id, mapping) -> Optional[int]:
    """Local user id for an exported one; None for system rows, False if unknown."""
    if exported_id is None:
        return None
    if exported_id in mapping:
        return mapping[exported_id]
    if db.session.get(User, exported_id) is not None:
        return exported_id
    return False


def _owner_filter(model, user_id):
    if user_id is None:
        return model.user_id.is_(None)
    return model.user_id == user_id
