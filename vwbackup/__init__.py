import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


class SecretMaskingFilter(logging.Filter):
    """
    Replace secret values with *** in log records.

    Values are taken from the secret store each time a record passes, so
    secrets fetched after logging was configured are masked too.
    """

    def __init__(self, secret_store=None):
        super().__init__()
        self.secret_store = secret_store

    def filter(self, record):
        if self.secret_store is None:
            return True

        values = [v for v in self.secret_store.known_values() if v]
        if not values:
            return True

        message = record.getMessage()
        masked = message
        for value in values:
            masked = masked.replace(value, '***')
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def configure_logging(app, masking_filter=None):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler (disabled when LOG_DIR is unset, e.g. under test)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'vwbackup.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    if masking_filter is not None:
        for handler in handlers:
            handler.addFilter(masking_filter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    for handler in handlers:
        app.logger.addHandler(handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def get_backup_context(app=None):
    """
    Return the BackupContext built at startup.

    Raises:
        ConfigurationError: If the backup configuration was invalid
    """
    from flask import current_app
    app = app or current_app
    error = app.extensions.get('vwbackup_config_error')
    if error is not None:
        raise error
    return app.extensions['vwbackup_context']


def create_app(config_name=None, config_overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from vwbackup.config import config
    app.config.from_object(config[config_name])
    if config_overrides:
        app.config.update(config_overrides)

    # Secrets: this is the process entry point, so it may hand the environment over
    from vwbackup.utils.secrets import create_secret_store
    from vwbackup.backup.errors import ConfigurationError

    secret_store = None
    try:
        secret_store = create_secret_store(
            app.config['SECRETS_BACKEND'],
            environ=dict(os.environ),
            secrets_dir=app.config.get('SECRETS_DIR'),
            secrets_file=app.config.get('SECRETS_FILE'),
            master_key=app.config.get('SECRET_KEY')
        )
    except ConfigurationError as e:
        app.extensions['vwbackup_config_error'] = e

    # Configure logging
    configure_logging(app, SecretMaskingFilter(secret_store))

    # Ensure required directories exist
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and ':memory:' not in db_uri:
        os.makedirs(os.path.dirname(os.path.abspath(db_uri.replace('sqlite:///', '', 1))), exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Build explicit backup settings once; components never read the environment
    from vwbackup.backup.settings import BackupSettings, BackupContext
    if secret_store is not None:
        try:
            settings = BackupSettings.from_config(app.config)
            os.makedirs(settings.scratch_dir, exist_ok=True)
            os.makedirs(settings.lock_dir, exist_ok=True)
            app.extensions['vwbackup_context'] = BackupContext(settings, secret_store)
        except ConfigurationError as e:
            app.extensions['vwbackup_config_error'] = e
        except OSError as e:
            app.extensions['vwbackup_config_error'] = ConfigurationError(f"Cannot create working directory: {e}")

    app.extensions['vwbackup_secret_store'] = secret_store
    if 'vwbackup_config_error' in app.extensions:
        app.logger.error(f"Backup configuration invalid: {app.extensions['vwbackup_config_error'].message}")

    # Register blueprints
    from vwbackup.routes import status_routes
    app.register_blueprint(status_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # CLI commands
    from vwbackup.cli import register_commands
    register_commands(app)

    # Initialize database schema and run migrations
    from vwbackup import models
    from vwbackup.migrations import init_database_schema

    init_database_schema(app)

    # Initialize and start scheduler (only in designated worker or development child process)
    from vwbackup.scheduler import init_scheduler, start_scheduler, sync_backup_jobs, stop_scheduler
    import atexit

    # Determine if this process should initialize the scheduler
    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    # Scheduler initialization logic:
    # - Development mode: Only in Flask reloader child process (not parent)
    # - Production mode: Only in designated scheduler worker (SCHEDULER_WORKER=true)
    # - CLI invocations start the scheduler only through the daemon command
    should_init_scheduler = False

    if not app.config.get('SCHEDULER_ENABLED', True) or os.environ.get('VWBACKUP_CLI') == 'true':
        should_init_scheduler = False
    elif is_development:
        should_init_scheduler = is_reloader_child
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
    else:
        should_init_scheduler = is_scheduler_worker
        app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")

    if should_init_scheduler and 'vwbackup_context' in app.extensions:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()
        sync_backup_jobs()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
