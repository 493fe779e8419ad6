import os
import logging
from logging.handlers import RotatingFileHandler


__version__ = '0.4.0'
TOOL_NAME = 'secure-backup'


def configure_logging(config, verbose: bool = False):
    """Configure application logging"""

    # Set log level based on environment
    log_level = logging.DEBUG if getattr(config, 'DEBUG', False) else logging.INFO
    console_level = logging.DEBUG if verbose else log_level

    handlers = []

    # Console handler
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_formatter = logging.Formatter(
        '[%(asctime)s] %(levelname)s in %(module)s: %(message)s'
    )
    console_handler.setFormatter(console_formatter)
    handlers.append(console_handler)

    # File handler
    if getattr(config, 'LOG_TO_FILE', True):
        log_dir = config.LOG_DIR
        os.makedirs(log_dir, exist_ok=True)

        file_handler = RotatingFileHandler(
            os.path.join(log_dir, 'secure-backup.log'),
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
    logging.basicConfig(level=min(log_level, console_level), handlers=handlers, force=True)

    logger = logging.getLogger(__name__)
    logger.debug(f"Logging configured (level: {logging.getLevelName(log_level)})")
