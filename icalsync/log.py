"""Logging setup for icalsync processes."""

from __future__ import annotations

import logging
import os
from typing import Optional


LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

NOISY_LOGGERS = ("urllib3", "requests", "uvicorn.access")


def configure_logging(debug: bool = False, force_debug: Optional[bool] = None) -> None:
    """Set root and package log levels.

    Environment variables:
        ICALSYNC_DEBUG: '1', 'true' or 'yes' forces debug logging
        ICALSYNC_LOG_LEVEL: overrides the root level (DEBUG, INFO, WARNING, ERROR)
    """
    env_debug = os.getenv("ICALSYNC_DEBUG", "").lower() in ("1", "true", "yes")
    env_log_level = os.getenv("ICALSYNC_LOG_LEVEL", "").upper()

    if force_debug is not None:
        final_debug = force_debug
    else:
        final_debug = debug or env_debug

    root_level = logging.DEBUG if final_debug else logging.INFO
    if env_log_level in ("DEBUG", "INFO", "WARNING", "ERROR"):
        root_level = getattr(logging, env_log_level)

    root_logger = logging.getLogger()
    root_logger.setLevel(root_level)
    if not root_logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root_logger.addHandler(handler)

    logging.getLogger("icalsync").setLevel(root_level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
