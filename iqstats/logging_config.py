"""Centralized logging configuration for iqstats."""

import logging
import sys
from typing import Optional


def setup_logging(level: Optional[str] = None) -> None:
    """
    Configure logging for the entire application.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL).
               Defaults to INFO if not specified.
    """
    log_level = getattr(logging, level.upper()) if level else logging.INFO

    logging.basicConfig(
        level=log_level,
        format="%(asctime)s | %(levelname)-8s | %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )

    # Suppress overly verbose loggers
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)

    logging.getLogger("iqstats").setLevel(log_level)
    logging.getLogger("iqstats.datasource").setLevel(logging.INFO)

    logger = logging.getLogger("iqstats.logging_config")
    logger.info(f"Logging initialized at level: {logging.getLevelName(log_level)}")
