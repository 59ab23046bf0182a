"""
Logging setup shared by every engine component.

Components grab a named logger (``get_logger("TurnScheduler")``) and log
through the standard library; this module only configures the root handler.
"""

import logging
import sys

_LOG_FORMAT = "%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"

_configured = False


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once. Later calls only adjust the level."""
    global _configured
    root = logging.getLogger()
    root.setLevel(level)
    if _configured:
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)

    # Expected during heavy load and not actionable
    logging.getLogger("apscheduler.scheduler").setLevel(logging.ERROR)
    logging.getLogger("apscheduler.executors.default").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

    _configured = True


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
