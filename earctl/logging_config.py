"""Logging setup shared by the CLI and embedding applications.

Level resolution order: explicit argument, ``EARCTL_LOG_LEVEL``, then WARNING.
"""

from __future__ import annotations

import logging
import os

from earctl.core.config import LOG_LEVEL_ENV

LOG_FORMAT = "%(asctime)s %(levelname)-5s [%(name)s] %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


def get_log_level(default: str = "WARNING") -> str:
    return (os.getenv(LOG_LEVEL_ENV, default) or default).upper()


def configure_logging(level: str | None = None) -> None:
    resolved = (level or get_log_level()).upper()
    logging.basicConfig(
        level=getattr(logging, resolved, logging.WARNING),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        force=True,
    )
