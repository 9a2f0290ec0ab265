import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager


__version__ = '1.4.0'

# Initialize extensions
db = SQLAlchemy()
login_manager = LoginManager()


def configure_logging(app):
    """Configure application logging"""

    log_dir = os.path.join(app.config['DATA_DIR'], 'logs')
    os.makedirs(log_dir, exist_ok=True)

    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'sourdough.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Drop handlers left by an earlier app instance in this process
    for handler in list(app.logger.handlers):
        app.logger.removeHandler(handler)
        handler.close()

    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, overrides=None):
    """
    Flask application factory.

    Args:
        config_name: Key into sourdough.config.config (defaults to FLASK_ENV)
        overrides: Optional dict applied on top of the config class before
            any extension is initialized
    """
    app = Flask(__name__)

    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from sourdough.config import config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    configure_logging(app)

    # Ensure required directories exist
    for key in ('TEMP_DIR', 'BACKUP_DISK_PATH', 'PUBLIC_STORAGE_DIR'):
        os.makedirs(app.config[key], exist_ok=True)

    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        db_dir = os.path.dirname(db_uri.replace('sqlite:///', '', 1))
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    db.init_app(app)
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id):
        from sourdough.models import User
        from sourdough.auth import UserModel
        user = db.session.get(User, int(user_id))
        if user:
            return UserModel(user)
        return None

    @login_manager.unauthorized_handler
    def unauthorized():
        return {'error': 'Authentication required'}, 401

    from sourdough.routes import auth_routes, backup_routes, backup_settings_routes
    app.register_blueprint(auth_routes.bp)
    app.register_blueprint(backup_routes.bp)
    app.register_blueprint(backup_settings_routes.bp)

    @app.route('/health')
    def health():
        return {'status': 'healthy', 'version': __version__}, 200

    # Initialize database schema and run migrations
    from sourdough import models  # noqa: F401
    from sourdough.migrations import init_database_schema

    init_database_schema(app)

    # Scheduler runs in a single designated process only
    from sourdough.scheduler import init_scheduler, start_scheduler, sync_backup_schedule, stop_scheduler
    import atexit

    if not app.config.get('SCHEDULER_ENABLED', True):
        app.logger.info("Scheduler disabled by configuration")
        return app

    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    if is_development:
        should_init_scheduler = is_reloader_child
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
    else:
        should_init_scheduler = is_scheduler_worker
        app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")

    if should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()

        with app.app_context():
            sync_backup_schedule()

        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app
