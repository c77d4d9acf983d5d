import logging
import os
import sys
from pathlib import Path

import config

LOGGER_NAME = "rainly_http"


def log_directory() -> Path:
    """Log output directory: $RAINLY_LOG_DIR, else config.LOG_DIR."""
    return Path(os.getenv(config.ENV_PREFIX + "LOG_DIR") or config.LOG_DIR)


def setup_logger():
    logger = logging.getLogger(LOGGER_NAME)

    # Every module calls this at import time; configure the handlers only once
    if logger.handlers:
        return logger

    # Create logs directory if it doesn't exist
    logs_dir = log_directory()
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.DEBUG)

    # Create formatters
    file_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s'
    )
    console_formatter = logging.Formatter(
        '%(asctime)s - %(levelname)s - %(message)s'
    )

    # File handler (for detailed logging)
    file_handler = logging.FileHandler(logs_dir / f"{LOGGER_NAME}.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(file_formatter)

    # Console handler (for basic logging)
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)
    console_handler.setFormatter(console_formatter)

    # Add handlers to logger
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    return logger
