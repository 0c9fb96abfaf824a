"""
Logging setup for the payments API.
Installs a single stdout handler so uvicorn and application records share one format.
"""

import logging
import sys
from typing import Optional

from config import settings


def setup_logging(log_level: Optional[str] = None) -> None:
    """
    Configure the root logger.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR). Defaults to LOG_LEVEL.
    """
    level = (log_level or settings.log_level).upper()

    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(name)s] %(levelname)s: %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
        )
    )
    root.setLevel(level)
    root.addHandler(handler)

    if level != "DEBUG":
        logging.getLogger("pymongo").setLevel(logging.WARNING)
