import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


__version__ = '0.1.0'

LOG_FILE_NAME = 'zesty-backup.log'

LOG_LEVELS = {
    'debug': logging.DEBUG,
    'info': logging.INFO,
    'warning': logging.WARNING,
    'warn': logging.WARNING,
    'error': logging.ERROR,
}

# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # DEBUG in development, configured level otherwise
    if app.config.get('DEBUG', False):
        log_level = logging.DEBUG
    else:
        log_level = LOG_LEVELS.get(str(app.config.get('LOG_LEVEL', 'info')).lower(), logging.INFO)

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)

    # File handler
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE_NAME),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger; force replaces handlers from an earlier app instance
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler], force=True)

    # Flask app logger propagates to the root handlers
    app.logger.setLevel(log_level)

    # Third-party SDKs are noisy at DEBUG
    for name in ('botocore', 'boto3', 'urllib3', 's3transfer', 'azure', 'google', 'apscheduler.executors'):
        logging.getLogger(name).setLevel(max(log_level, logging.INFO))

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config_name=None, config_overrides=None):
    """
    Flask application factory.

    Args:
        config_name: Key into zesty_backup.config.config (default: FLASK_ENV or production)
        config_overrides: Extra config values applied last (e.g. LOG_DIR from the settings file)
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from zesty_backup.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        db_dir = os.path.dirname(database_uri.replace('sqlite:///', ''))
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from zesty_backup.routes import status_routes
    app.register_blueprint(status_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema
    from zesty_backup import models  # noqa: F401
    with app.app_context():
        db.create_all()

    return app
