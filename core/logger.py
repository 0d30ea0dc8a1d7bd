"""
Service Logger Setup

Configures stdlib logging once per process from LoggingConfig.

Usage:
    from core.logger import setup_service_logger
    logger = setup_service_logger("delivery_service")
"""

import logging
import sys
from typing import Optional

from core.config import LoggingConfig

_configured = False


def setup_service_logger(service_name: str, config: Optional[LoggingConfig] = None) -> logging.Logger:
    """
    Configure root logging handlers and return the service logger.

    Args:
        service_name: Logger name, usually the service name
        config: Logging configuration (defaults to environment)

    Returns:
        Logger for the service
    """
    global _configured

    config = config or LoggingConfig.from_env()
    level = getattr(logging, config.log_level.upper(), logging.INFO)

    if not _configured:
        root = logging.getLogger()
        root.setLevel(level)
        formatter = logging.Formatter(config.log_format)

        if config.enable_console:
            console = logging.StreamHandler(sys.stdout)
            console.setFormatter(formatter)
            root.addHandler(console)

        if config.log_file:
            file_handler = logging.FileHandler(config.log_file)
            file_handler.setFormatter(formatter)
            root.addHandler(file_handler)

        # Quiet noisy client libraries
        logging.getLogger("httpx").setLevel(logging.WARNING)
        logging.getLogger("nats").setLevel(logging.WARNING)
        _configured = True

    logger = logging.getLogger(service_name)
    logger.setLevel(level)
    return logger


__all__ = ["setup_service_logger"]
