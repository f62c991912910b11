"""
Infrastructure helpers: logging setup and configuration loading.
"""

from .logging_config import setup_logging, DailyRotatingFileHandler
from .config import load_config, get_log_settings, get_api_settings

__all__ = [
    "setup_logging",
    "DailyRotatingFileHandler",
    "load_config",
    "get_log_settings",
    "get_api_settings",
]
