"""
Authentication routes: JSON login, logout and current user.
"""

import logging
from flask import Blueprint, jsonify, request
from flask_login import login_user, logout_user, login_required, current_user

from sourdough.models import User
from sourdough.auth import verify_password, UserModel


bp = Blueprint('auth', __name__, url_prefix='/api/auth')
logger = logging.getLogger(__name__)


@bp.route('/login', methods=['POST'])
def login():
    """
    Log in with email and password.

    Request body:
        - email: Account email (required)
        - password: Account password (required)
    """
    data = request.get_json(silent=True) or {}
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''

    if not email or not password:
        return jsonify({'error': 'Email and password are required'}), 400

    user = User.query.filter_by(email=email).first()
    if not user or not verify_password(user.password_hash, password):
        logger.warning(f"Failed login attempt for {email}")
        return jsonify({'error': 'Invalid email or password'}), 401

    login_user(UserModel(user), remember=data.get('remember', False))
    return jsonify({'user': _user_payload(user)})


@bp.route('/logout', methods=['POST'])
@login_required
def logout():
    logout_user()
    return jsonify({'success': True})


@bp.route('/me', methods=['GET'])
@login_required
def me():
    return jsonify({'user': _user_payload(current_user.user)})


def _user_payload(user):
    return {
        'id': user.id,
        'name': user.name,
        'email': user.email,
        'is_admin': bool(user.is_admin),
    }
