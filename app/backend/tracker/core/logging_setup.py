"""Logging configuration for the tracker service."""

from __future__ import annotations

import logging
import sys

LOGGER_NAME = "tracker"


def setup_logging(level: str | int = logging.INFO) -> None:
    """
    Configure the ``tracker`` logger with a single stream handler.

    Safe to call more than once (e.g. one app per test): previous handlers
    installed here are replaced rather than duplicated.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(level.upper() if isinstance(level, str) else level)

    for handler in list(logger.handlers):
        logger.removeHandler(handler)

    fmt = logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(fmt)
    logger.addHandler(handler)

    # APScheduler logs every job execution at INFO.
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
