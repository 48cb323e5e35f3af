"""Centralized logging setup."""

import logging
import sys
from typing import Optional


def _handler_exists(logger: logging.Logger, handler_type: type) -> bool:
    return any(isinstance(handler, handler_type) for handler in logger.handlers)


def configure_logging(log_level: Optional[str] = None) -> int:
    if log_level is None:
        from convosync.config import get_settings

        log_level = get_settings().log_level
    level = getattr(logging, (log_level or "INFO").upper(), logging.INFO)

    logger = logging.getLogger("convosync")
    logger.setLevel(level)

    if not _handler_exists(logger, logging.StreamHandler):
        formatter = logging.Formatter(
            "[%(asctime)s.%(msecs)03d] [%(levelname)-5s] [%(name)-20s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    for name in ("pymongo", "motor", "redis"):
        logging.getLogger(name).setLevel(logging.WARNING)

    return level
