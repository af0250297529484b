import os
import atexit
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy


# Initialize extensions
db = SQLAlchemy()


def configure_logging(app):
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

    # File handler (skipped when LOG_DIR is unset, e.g. under tests)
    log_dir = app.config.get('LOG_DIR')
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'pullkeeper.log'),
            maxBytes=10485760,  # 10MB
            backupCount=10
        )
        file_handler.setLevel(log_level)
        file_formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s [%(name)s.%(funcName)s:%(lineno)d] %(message)s'
        )
        file_handler.setFormatter(file_formatter)
        handlers.append(file_handler)

    # Configure root logger
    logging.basicConfig(level=log_level, handlers=handlers)

    # paramiko is chatty at INFO (one line per channel)
    logging.getLogger('paramiko').setLevel(logging.WARNING)

    app.logger.setLevel(log_level)
    app.logger.info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def _should_start_scheduler(app) -> bool:
    """
    Decide whether this process owns the backup scheduler.

    Timers live in memory, so exactly one process may run them:
    - Development mode: only the Flask reloader child process
    - Production mode: only the designated gunicorn worker (SCHEDULER_WORKER=true)
    """
    if not app.config.get('SCHEDULER_ENABLED', True):
        return False

    if app.config.get('DEBUG', False):
        is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
        return is_reloader_child

    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'true').lower() == 'true'
    app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")
    return is_scheduler_worker


def create_app(config_name=None):
    """Flask application factory"""

    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from pullkeeper.config import config
    app.config.from_object(config[config_name])

    # Configure logging
    configure_logging(app)

    # Ensure the SQLite directory exists
    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        os.makedirs(os.path.dirname(database_uri.replace('sqlite:///', '')) or '.', exist_ok=True)

    # Initialize extensions
    db.init_app(app)

    # Register blueprints
    from pullkeeper.routes import backup_routes, scheduler_routes, server_routes, history_routes
    app.register_blueprint(backup_routes.bp)
    app.register_blueprint(scheduler_routes.bp)
    app.register_blueprint(server_routes.bp)
    app.register_blueprint(history_routes.bp)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema and run migrations
    from pullkeeper import models  # noqa: F401
    from pullkeeper.migrations import init_database_schema

    init_database_schema(app)

    if _should_start_scheduler(app):
        from pullkeeper.scheduler import BackupScheduler

        app.logger.info("Initializing scheduler in this process...")
        backup_scheduler = BackupScheduler(app)
        backup_scheduler.start()
        app.extensions['backup_scheduler'] = backup_scheduler

        # Stop timers on interpreter shutdown
        atexit.register(backup_scheduler.shutdown)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process (not designated scheduler worker)")

    return app
