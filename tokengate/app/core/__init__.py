"""Core utilities for tokengate."""

from tokengate.app.core.config import settings
from tokengate.app.core.logging import get_log_context, get_logger, setup_logging

__all__ = [
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
]
