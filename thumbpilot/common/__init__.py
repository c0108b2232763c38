"""
Common utilities and shared modules.
"""

from thumbpilot.common.cache import CacheKeys, redis_client
from thumbpilot.common.config import get_settings, settings
from thumbpilot.common.database import db, init_db
from thumbpilot.common.exceptions import ThumbPilotError
from thumbpilot.common.logger import get_logger, log_context, logger

__all__ = [
    "settings",
    "get_settings",
    "logger",
    "get_logger",
    "log_context",
    "db",
    "init_db",
    "redis_client",
    "CacheKeys",
    "ThumbPilotError",
]
