"""General utilities for stackformer."""

from .config import Config, load_yaml
from .io import load_state, save_state
from .logging import configure_logging, get_logger

__all__ = [
    "Config",
    "load_yaml",
    "save_state",
    "load_state",
    "configure_logging",
    "get_logger",
]
