import os
import logging
from logging.handlers import RotatingFileHandler
from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_login import LoginManager


# Initialize extensions
db = SQLAlchemy()
login_manager = LoginManager()


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
        os.path.join(log_dir, 'stowage.log'),
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

    # Configure Flask app logger (drop handlers of a previous app instance)
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
        config_name: Key into stowage.config.config (defaults to FLASK_ENV)
        overrides: Optional dict applied on top of the config class before
            any extension is initialized
    """
    app = Flask(__name__)

    # Load configuration
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'production')

    from stowage.config import config
    app.config.from_object(config[config_name])

    if overrides:
        app.config.update(overrides)

    # Configure logging
    configure_logging(app)

    # Ensure required directories exist
    os.makedirs(app.config['TEMP_DIR'], exist_ok=True)
    if app.config['FILESYSTEM_TYPE'] == 'local':
        os.makedirs(app.config['LOCAL_BACKUP_DIR'], exist_ok=True)

    database_uri = app.config['SQLALCHEMY_DATABASE_URI']
    if database_uri.startswith('sqlite:///') and ':memory:' not in database_uri:
        database_dir = os.path.dirname(database_uri.replace('sqlite:///', ''))
        if database_dir:
            os.makedirs(database_dir, exist_ok=True)

    # Initialize extensions
    db.init_app(app)
    login_manager.init_app(app)

    # API requests authenticate with a bearer token instead of a session
    from stowage.auth import load_api_client
    login_manager.request_loader(load_api_client)

    # Register blueprints
    from stowage.routes import backup_routes, dashboard_routes
    app.register_blueprint(backup_routes.bp)
    app.register_blueprint(dashboard_routes.bp)

    # Register CLI commands (flask backup ...)
    from stowage.cli import backup_cli
    app.cli.add_command(backup_cli)

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    # Initialize database schema and run migrations
    from stowage import models
    from stowage.migrations import init_database_schema

    init_database_schema(app)

    # Initialize and start scheduler (only in designated worker or development child process)
    from stowage.scheduler import init_scheduler, start_scheduler, stop_scheduler
    import atexit

    is_reloader_child = os.environ.get('WERKZEUG_RUN_MAIN') == 'true'
    is_development = app.config.get('DEBUG', False)
    is_scheduler_worker = os.environ.get('SCHEDULER_WORKER', 'false').lower() == 'true'

    # Scheduler initialization logic:
    # - Testing: never
    # - Development mode: Only in Flask reloader child process (not parent)
    # - Production mode: Only in designated scheduler worker (SCHEDULER_WORKER=true,
    #   set by docker/gunicorn_conf.py), so flask CLI commands never schedule jobs
    if not app.config.get('SCHEDULER_ENABLED', True):
        should_init_scheduler = False
    elif is_development:
        should_init_scheduler = is_reloader_child
        app.logger.info(f"Development mode: is_reloader_child={is_reloader_child}")
    else:
        should_init_scheduler = is_scheduler_worker
        app.logger.info(f"Production mode: is_scheduler_worker={is_scheduler_worker}")

    if should_init_scheduler:
        app.logger.info("Initializing scheduler in this process...")
        init_scheduler(app)
        start_scheduler()

        # Register cleanup function to stop scheduler on app shutdown
        atexit.register(stop_scheduler)
        app.logger.info("Scheduler initialized and started successfully")
    else:
        app.logger.info("Scheduler initialization skipped in this process")

    return app
