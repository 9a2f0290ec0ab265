from datetime import datetime
from sourdough import db


class User(db.Model):
    """Platform user account"""
    __tablename__ = 'users'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(255), nullable=False)
    email = db.Column(db.String(255), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=True)  # NULL = must reset before login
    is_admin = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    settings = db.relationship('Setting', back_populates='user', cascade='all, delete-orphan', lazy='dynamic')

    def __repr__(self):
        return f'<User {self.email}>'


class Setting(db.Model):
    """Key/value setting; user_id NULL means a system-wide setting"""
    __tablename__ = 'settings'
    __table_args__ = (db.UniqueConstraint('user_id', 'key', name='uq_settings_user_key'),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=True)
    key = db.Column(db.String(255), nullable=False)
    value = db.Column(db.Text)  # JSON-encoded
    is_encrypted = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = db.relationship('User', back_populates='settings')

    def __repr__(self):
        return f'<Setting {self.key} user_id={self.user_id}>'


class Notification(db.Model):
    """In-app notification"""
    __tablename__ = 'notifications'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    type = db.Column(db.String(100), nullable=False)
    title = db.Column(db.String(255), nullable=False)
    message = db.Column(db.Text)
    read_at = db.Column(db.DateTime)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<Notification {self.type} user_id={self.user_id}>'


class SocialAccount(db.Model):
    """SSO identity linked to a user"""
    __tablename__ = 'social_accounts'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=False)
    provider = db.Column(db.String(50), nullable=False)
    provider_user_id = db.Column(db.String(255), nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<SocialAccount {self.provider} user_id={self.user_id}>'


class AIProvider(db.Model):
    """LLM provider integration"""
    __tablename__ = 'ai_providers'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('users.id', ondelete='CASCADE'), nullable=True)
    provider = db.Column(db.String(50), nullable=False)  # openai, anthropic, ollama, ...
    model = db.Column(db.String(255))
    api_key = db.Column(db.Text)
    api_key_required = db.Column(db.Boolean, default=False, nullable=False)  # Set after restore without key
    is_enabled = db.Column(db.Boolean, default=True, nullable=False)
    is_primary = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<AIProvider {self.provider} enabled={self.is_enabled}>'
