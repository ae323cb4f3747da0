"""Centralized logging configuration for the settlement service.

All modules log through the standard library so that order, refund and payout
transitions end up in one stream with one format.
"""

import logging
import sys

from settlement.config import get_settings


def setup_logging():
    """
    Configures the global logging system for the application.

    The configuration includes:
        - Log level from LOG_LEVEL (INFO by default)
        - Log format: timestamp, level, process id, logger name and message
        - Output to stdout, plus LOG_FILE when it is set
        - Reduced verbosity for stripe and the SQLAlchemy engine
    """
    settings = get_settings()
    log_format = '%(asctime)s - %(levelname)s - [PID:%(process)d] - %(name)s - %(message)s'

    handlers = [logging.StreamHandler(sys.stdout)]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file))

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format=log_format,
        handlers=handlers,
    )

    logging.getLogger("stripe").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def get_logger(name):
    """Returns a logger for a module; use instead of logging.getLogger() directly."""
    return logging.getLogger(name)
