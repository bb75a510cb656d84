import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, current_app
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
    """Configure application logging"""

    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)

    # Set log level based on environment
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
        os.path.join(log_dir, 'backupdb.log'),
        maxBytes=10485760,  # 10MB
        backupCount=10
    )
    file_handler.setLevel(log_level)
    file_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    )
    file_handler.setFormatter(file_formatter)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # Configure Flask app logger
    app.logger.setLevel(log_level)
    app.logger.addHandler(console_handler)
    app.logger.addHandler(file_handler)

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def load_backup_config(app):
    """
    Load the YAML job file named by BACKUP_CONFIG_PATH.

    A missing file yields an empty configuration; an invalid one raises ConfigError.
    """
    from backupdb.jobs import BackupConfig, load_config

    path = app.config['BACKUP_CONFIG_PATH']
    if not os.path.exists(path):
        app.logger.warning(f"Backup config file not found: {path}. No jobs configured.")
        return BackupConfig()

    backup_config = load_config(path)
    app.logger.info(
        f"Loaded {len(backup_config.jobs)} backup jobs and {len(backup_config.storage)} storage providers from {path}"
    )
    return backup_config


def get_runner(app=None):
    """Return the BackupRunner of the given (or current) app."""
    app = app or current_app
    return app.extensions['backupdb']['runner']


def create_app(config_name=None, overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from backupdb.config import config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    os.makedirs(app.config['BACKUP_ROOT'], exist_ok=True)
    db_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if db_uri.startswith('sqlite:///') and db_uri != 'sqlite:///:memory:':
        db_dir = os.path.dirname(db_uri.replace('sqlite:///', ''))
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Build the backup engine from the job file
    from backupdb.backup.executor import BackupRunner
    from backupdb.backup.storage import StorageDispatcher, build_storage_backends

    backup_config = load_backup_config(app)
    engine_logger = logging.getLogger('backupdb.engine')
    backends = build_storage_backends(backup_config.storage, logger=engine_logger)
    dispatcher = StorageDispatcher(backends, logger=engine_logger)
    runner = BackupRunner(
        backup_config,
        dispatcher,
        app.config['BACKUP_ROOT'],
        staging_root=app.config['TEMP_DIR'],
        logger=engine_logger
    )
    app.extensions['backupdb'] = {
        'config': backup_config,
        'dispatcher': dispatcher,
        'runner': runner
    }

    # Register blueprints
    from backupdb.routes import jobs_routes, history_routes
    app.register_blueprint(jobs_routes.bp)
    app.register_blueprint(history_routes.bp)

    from backupdb.cli import register_commands
    register_commands(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        from backupdb.scheduler import is_scheduler_running, get_scheduled_jobs
        return {
            'status': 'healthy',
            'jobs': len(backup_config.jobs),
            'storage': sorted(backends),
            'scheduler': 'running' if is_scheduler_running() else 'stopped',
            'scheduled_jobs': get_scheduled_jobs()
        }, 200

    # Initialize database schema
    from backupdb import models  # noqa: F401
    with app.app_context():
        db.create_all()

    # Initialize and start scheduler
    from backupdb.scheduler import init_scheduler, start_scheduler, register_backup_jobs, stop_scheduler
    import atexit

    # Development: only the Flask reloader child runs the scheduler
    # Production: only the gunicorn worker marked SCHEDULER_WORKER=true (see docker/gunicorn_conf.py)
    if app.config.get('DEBUG', False):
        should_init_scheduler = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    else:
        should_init_scheduler = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'

    if app.config.get('SCHEDULER_ENABLED', True) and should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        register_backup_jobs(backup_config.jobs)
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
