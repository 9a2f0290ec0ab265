"""
Key/value settings service.

System-wide settings live in the settings table with user_id NULL and keys
namespaced by group ("backup.s3_bucket"). Values are stored JSON-encoded;
secret keys are encrypted with the SECRET_KEY-derived cipher.
"""

import json
import logging
from typing import Any, Dict, Iterable, Optional

from sourdough import db
from sourdough.models import Setting
from sourdough.utils.crypto import SecretCipher, InvalidToken

logger = logging.getLogger(__name__)


class SettingsStore:
    """Read and write grouped system settings."""

    def __init__(self, cipher: SecretCipher, secret_keys: Iterable[str] = ()):
        """
        Args:
            cipher: Cipher used for secret values
            secret_keys: Fully qualified keys ("group.name") stored encrypted
        """
        self.cipher = cipher
        self.secret_keys = set(secret_keys)

    def get(self, group: str, name: str, default: Any = None) -> Any:
        record = self._query(f"{group}.{name}")
        if record is None:
            return default
        return self._decode(record, default)

    def get_group(self, group: str) -> Dict[str, Any]:
        """
        Return all system settings of a group keyed by short name.

        Secrets that cannot be decrypted (e.g. restored from an installation
        with a different SECRET_KEY) are omitted.
        """
        prefix = f"{group}."
        records = Setting.query.filter(
            Setting.user_id.is_(None),
            Setting.key.like(f"{prefix}%")
        ).all()

        values = {}
        missing = object()
        for record in records:
            value = self._decode(record, missing)
            if value is not missing:
                values[record.key[len(prefix):]] = value
        return values

    def set(self, group: str, name: str, value: Any, commit: bool = True) -> Setting:
        key = f"{group}.{name}"
        record = self._query(key)
        if record is None:
            record = Setting(user_id=None, key=key)
            db.session.add(record)

        encoded = json.dumps(value)
        if key in self.secret_keys and value is not None:
            record.value = self.cipher.encrypt(encoded)
            record.is_encrypted = True
        else:
            record.value = encoded
            record.is_encrypted = False

        if commit:
            db.session.commit()
        return record

    def reset(self, group: str, name: str) -> bool:
        """Delete a stored override so the config default applies again."""
        record = self._query(f"{group}.{name}")
        if record is None:
            return False
        db.session.delete(record)
        db.session.commit()
        return True

    def _query(self, key: str) -> Optional[Setting]:
        return Setting.query.filter(Setting.user_id.is_(None), Setting.key == key).first()

    def _decode(self, record: Setting, default: Any) -> Any:
        raw = record.value
        if raw is None:
            return None
        if record.is_encrypted:
            try:
                raw = self.cipher.decrypt(raw)
            except InvalidToken:
                logger.warning(f"Could not decrypt setting '{record.key}' - treating it as unset")
                return default
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning(f"Setting '{record.key}' is not valid JSON - treating it as unset")
            return default
