from __future__ import annotations

import logging
import sys
from typing import TYPE_CHECKING

import structlog

if TYPE_CHECKING:
    from pathlib import Path

LOGGER_NAME = "as_built"
LOG_FORMAT = "%(message)s"


def _configure_structlog() -> None:
    structlog.configure(
        processors=[
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(logging.INFO),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def log_to_file(filename: str | Path) -> None:
    """Send every JSON log line to ``filename`` instead of stderr.

    Only the stdlib root handler changes, so loggers already bound keep working.
    """
    logging.basicConfig(
        level=logging.INFO,
        handlers=[logging.FileHandler(str(filename), encoding="utf-8")],
        format=LOG_FORMAT,
        force=True,
    )


logging.basicConfig(level=logging.INFO, handlers=[logging.StreamHandler(sys.stderr)], format=LOG_FORMAT)
_configure_structlog()
logger = structlog.get_logger(LOGGER_NAME)
