"""
Logging bootstrap driven by LoggingConfig
"""

import logging
from logging.handlers import RotatingFileHandler
from typing import Optional

from .config import LoggingConfig, get_config


def configure_logging(config: Optional[LoggingConfig] = None) -> None:
    """Install stream (and optional rotating file) handlers on the root logger"""
    config = config or get_config().logging

    root = logging.getLogger()
    root.setLevel(config.level.upper())

    formatter = logging.Formatter(config.format)

    # Re-running must not stack handlers
    for handler in list(root.handlers):
        root.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    if config.log_file:
        file_handler = RotatingFileHandler(
            config.log_file,
            maxBytes=config.max_file_size,
            backupCount=config.backup_count
        )
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    # motor/pymongo are chatty at DEBUG
    logging.getLogger("pymongo").setLevel(logging.WARNING)
