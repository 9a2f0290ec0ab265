"""
Encryption of secret setting values (destination credentials).

The Fernet key is derived from the Flask SECRET_KEY, so values encrypted on
one installation only decrypt on an installation sharing that key.
"""

import base64
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC


class SecretCipher:
    """Encrypts and decrypts strings with a SECRET_KEY-derived Fernet key."""

    # Version tagged for future rotation
    SALT = b'sourdough_settings_salt_v1'

    def __init__(self, secret_key: str):
        if not secret_key:
            raise RuntimeError("SECRET_KEY not configured - cannot initialize SecretCipher")

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.SALT,
            iterations=100000,
        )
        key = base64.urlsafe_b64encode(kdf.derive(secret_key.encode()))
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        """Return a base64 token for plaintext."""
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        """
        Decrypt a token produced by encrypt().

        Raises:
            cryptography.fernet.InvalidToken: Wrong key or corrupted data
        """
        return self._fernet.decrypt(token.encode()).decode()


def get_secret_cipher(app) -> SecretCipher:
    """Build a SecretCipher from the Flask app's SECRET_KEY."""
    return SecretCipher(app.config.get('SECRET_KEY'))


__all__ = ['SecretCipher', 'get_secret_cipher', 'InvalidToken']
