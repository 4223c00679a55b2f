"""
Logging helpers.

Library modules create their logger with ``get_logger(__name__)`` and never
configure handlers; scripts call ``configure_logging`` once at startup.
"""

import logging

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def configure_logging(level: int = logging.INFO) -> None:
    """Configure root logging. Call once during application setup."""

    logging.basicConfig(level=level, format=LOG_FORMAT)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
