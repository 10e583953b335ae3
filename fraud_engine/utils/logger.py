"""
Logging configuration for the Fraud Engine.

Provides structured logging for production monitoring and debugging.
"""

import logging
import sys
from typing import Optional

from ..config import settings


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get a configured logger instance.

    Child loggers (fraud_engine.registry, fraud_engine.policy, ...)
    propagate to the root package logger, so only that one gets a handler.

    Args:
        name: Logger name (defaults to 'fraud_engine')

    Returns:
        Configured logger instance
    """
    logger_name = name or "fraud_engine"
    logger = logging.getLogger(logger_name)

    root = logging.getLogger("fraud_engine")
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S"
        )
        handler.setFormatter(formatter)
        root.addHandler(handler)
        root.setLevel(settings.app_log_level)

    return logger


# Default logger instance
logger = get_logger()
