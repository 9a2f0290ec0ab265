"""
Authentication utilities for Flask-Login integration and password management.
"""

from functools import wraps

from flask import jsonify
from werkzeug.security import generate_password_hash, check_password_hash
from flask_login import UserMixin, current_user, login_required
from sourdough.models import User


def hash_password(password: str) -> str:
    """
    Hash a password using werkzeug's pbkdf2:sha256.

    Args:
        password: Plain text password

    Returns:
        Hashed password string
    """
    return generate_password_hash(password, method='pbkdf2:sha256')


def verify_password(password_hash, password: str) -> bool:
    """
    Verify a password against its hash.

    Users restored without a password have no hash and never verify.
    """
    if not password_hash:
        return False
    return check_password_hash(password_hash, password)


def admin_required(view):
    """Require an authenticated administrator (401 / 403 JSON otherwise)."""

    @wraps(view)
    @login_required
    def wrapper(*args, **kwargs):
        if not current_user.is_admin:
            return jsonify({'error': 'Administrator access required'}), 403
        return view(*args, **kwargs)

    return wrapper


class UserModel(UserMixin):
    """
    Flask-Login user wrapper for the User database model.
    """

    def __init__(self, user: User):
        self.user = user

    def get_id(self):
        """Return user ID as required by Flask-Login."""
        return str(self.user.id)

    @property
    def id(self):
        return self.user.id

    @property
    def email(self):
        return self.user.email

    @property
    def is_admin(self):
        return bool(self.user.is_admin)
