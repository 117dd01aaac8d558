"""
Logging configuration for the custody coordinator.

Console output (colored in development, plain elsewhere) plus an optional
rotating log file. Every module grabs its logger through get_logger(__name__).

Usage:
    from custody.utils.logger import get_logger
    logger = get_logger(__name__)

    # In main.py / celery worker startup:
    from custody.utils.logger import setup_logging
    setup_logging()
"""

import logging
import sys
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER_NAME = "custody"


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors and clean structure"""

    # ANSI color codes
    COLORS = {
        'DEBUG': '\033[36m',     # Cyan
        'INFO': '\033[32m',      # Green
        'WARNING': '\033[33m',   # Yellow
        'ERROR': '\033[31m',     # Red
        'CRITICAL': '\033[35m',  # Magenta
        'RESET': '\033[0m',      # Reset
    }

    def format(self, record: logging.LogRecord) -> str:
        timestamp = datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M:%S')

        level_color = self.COLORS.get(record.levelname, self.COLORS['RESET'])
        reset_color = self.COLORS['RESET']

        # Clean module name (remove custody. prefix)
        prefix = f"{ROOT_LOGGER_NAME}."
        module_name = record.name[len(prefix):] if record.name.startswith(prefix) else record.name

        # Format: [TIMESTAMP] LEVEL [MODULE] MESSAGE
        formatted_message = f"{level_color}[{timestamp}] {record.levelname:<8} [{module_name:<28}] {record.getMessage()}{reset_color}"

        if record.exc_info:
            formatted_message += f"\n{self.formatException(record.exc_info)}"

        return formatted_message


def setup_logging(
    level: Optional[str] = None,
    format_type: Optional[str] = None,
    log_file: Optional[str] = None
) -> logging.Logger:
    """
    Configure application logging.

    Sets up logging with:
    - Console output (stdout), colored in development
    - File output with rotation
    - Quiet third-party loggers

    Args:
        level: Logging level (defaults to settings.LOG_LEVEL)
        format_type: "colored" or "simple" (defaults by environment)
        log_file: Log file path (defaults to settings.LOG_FILE_PATH)

    Returns:
        logging.Logger: Configured root application logger
    """
    from custody.config.settings import get_settings

    settings = get_settings()

    logger = logging.getLogger(ROOT_LOGGER_NAME)

    log_level_str = (level or settings.LOG_LEVEL).upper()
    log_level = getattr(logging, log_level_str, logging.INFO)
    logger.setLevel(log_level)

    # Prevent duplicate handlers
    if logger.handlers:
        return logger

    if format_type is None:
        format_type = "colored" if settings.ENVIRONMENT == "development" else "simple"

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    if format_type == "colored":
        console_handler.setFormatter(ColoredFormatter())
    else:
        console_handler.setFormatter(logging.Formatter(
            "[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        ))
    logger.addHandler(console_handler)

    # File handler with rotation
    log_file = log_file or settings.LOG_FILE_PATH
    if log_file:
        try:
            log_file_path = Path(log_file)
            log_file_path.parent.mkdir(parents=True, exist_ok=True)

            file_handler = RotatingFileHandler(
                filename=log_file,
                maxBytes=10 * 1024 * 1024,  # 10MB
                backupCount=5,
                encoding="utf-8"
            )
            file_handler.setLevel(log_level)
            file_handler.setFormatter(logging.Formatter(
                "[%(asctime)s] [%(levelname)s] [%(name)s:%(funcName)s:%(lineno)d] %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S"
            ))
            logger.addHandler(file_handler)

        except OSError as e:
            logger.warning(f"Failed to setup file logging: {str(e)}")

    # Set third-party loggers to WARNING to reduce noise
    logging.getLogger("motor").setLevel(logging.WARNING)
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("celery").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger instance for a specific module.

    Args:
        name: Logger name (typically __name__ of the module)

    Returns:
        logging.Logger: Logger instance under the application root logger

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("Sweep confirmed")
    """
    if name == ROOT_LOGGER_NAME or name.startswith(f"{ROOT_LOGGER_NAME}."):
        return logging.getLogger(name)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")
