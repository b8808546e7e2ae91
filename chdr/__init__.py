import os
import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from flask import Flask


def configure_logging(log_file: Optional[str] = None, debug: bool = False):
    """Configure application logging"""

    # Set log level based on debug flag
    log_level = logging.DEBUG if debug else logging.INFO

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers = [console_handler]

    # File handler
    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            log_file,
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
    logging.basicConfig(level=log_level, handlers=handlers, force=True)

    # boto and paramiko are chatty at DEBUG
    for name in ('botocore', 'boto3', 's3transfer', 'urllib3', 'paramiko'):
        logging.getLogger(name).setLevel(max(log_level, logging.INFO))

    logging.getLogger(__name__).info(f"Logging configured (level: {logging.getLevelName(log_level)})")


def create_app(config=None):
    """
    Flask application factory for service mode.

    Exposes the health endpoint polled by container orchestration and a
    status endpoint reporting scheduler state.
    """
    app = Flask(__name__)

    if config is not None:
        app.config['CHDR_ENVIRONMENT'] = config.environment
        app.config['CHDR_BACKUP_DIR'] = config.backup_dir

    # Health check endpoint
    @app.route('/health')
    def health():
        return {'status': 'healthy'}, 200

    @app.route('/status')
    def status():
        from chdr.scheduler import get_scheduler_diagnostics
        return get_scheduler_diagnostics(), 200

    return app
