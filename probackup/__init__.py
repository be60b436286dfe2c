import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask, current_app


NOISY_LOGGERS = ('botocore', 'boto3', 's3transfer', 'urllib3', 'paramiko', 'apscheduler.executors')


def _log_level(app):
    level = app.config.get('LOG_LEVEL')
    if level:
        return logging.getLevelName(str(level).upper())
    return logging.DEBUG if app.config.get('DEBUG', False) else logging.INFO


def configure_logging(app):
    """
    Send application logs to the console and to a rotating file.

    The file lives at ``{LOG_DIR}/probackup.log`` and rotates at 10MB,
    keeping ten generations. ``LOG_LEVEL`` overrides the level otherwise
    derived from ``DEBUG``.
    """
    log_dir = app.config['LOG_DIR']
    os.makedirs(log_dir, exist_ok=True)
    log_level = _log_level(app)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    ))

    file_handler = RotatingFileHandler(
        os.path.join(log_dir, 'probackup.log'),
        maxBytes=10 * 1024 * 1024,
        backupCount=10
    )
    file_handler.setFormatter(logging.Formatter(
        '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
    ))

    for handler in (console_handler, file_handler):
        handler.setLevel(log_level)

    logging.basicConfig(level=log_level, handlers=[console_handler, file_handler])

    # app.logger is the "probackup" package logger; records propagate to the root handlers
    app.logger.setLevel(log_level)

    # S3/SFTP transports log every request at DEBUG
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(log_level, logging.WARNING))

    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)}, dir: {log_dir})")


def get_manager():
    """Return the BackupManager of the current Flask app."""
    return current_app.extensions['probackup']


def create_app(config_name=None, overrides=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from probackup.config import config
    app.config.from_object(config[config_name])
    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    os.makedirs(app.config['BACKUP_DIR'], exist_ok=True)

    # Build the backup manager from configuration
    from probackup.backup.factory import build_manager
    manager = build_manager(app.config)
    app.extensions['probackup'] = manager
    manager.refresh_catalog()

    # Register blueprints and CLI commands
    from probackup.routes import backup_routes
    from probackup.cli import register_commands
    app.register_blueprint(backup_routes.bp)
    register_commands(app)

    # Health check endpoint
    @app.route('/health')
    def health():
        from probackup.scheduler import is_scheduler_running
        return {
            'status': 'healthy',
            'backups': len(manager.catalog),
            'storages': sorted(manager.storages.keys()),
            'scheduler_running': is_scheduler_running(),
        }, 200

    # Initialize and start scheduler (only when enabled for this process)
    if app.config.get('SCHEDULER_ENABLED', False):
        from probackup.scheduler import init_scheduler, start_scheduler, stop_scheduler
        import atexit

        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler disabled (SCHEDULER_ENABLED is false)")

    return app
