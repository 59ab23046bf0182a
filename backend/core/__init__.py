"""
Core configuration and wiring for the turn engine.
"""

from .logging import get_logger, setup_logging
from .settings import Settings, get_settings, reset_settings

__all__ = [
    "Settings",
    "get_settings",
    "reset_settings",
    "get_logger",
    "setup_logging",
]
