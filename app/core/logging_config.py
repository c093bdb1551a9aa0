"""Centralized logging configuration."""

import logging
import os

from dotenv import load_dotenv

load_dotenv()

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()

_VALID_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}


def setup_logging(level: str | None = None) -> None:
    """
    Configure root logging for the service.

    Uses LOG_LEVEL from the environment unless a level is passed, and turns
    down noisy third-party loggers to WARNING.
    """
    level = (level or LOG_LEVEL).upper()
    if level not in _VALID_LEVELS:
        raise ValueError(f"LOG_LEVEL must be one of {_VALID_LEVELS}, got {level!r}")

    logging.basicConfig(
        format="%(asctime)s %(levelname)-8s %(name)s  %(message)s",
        level=getattr(logging, level),
        force=True,
    )

    for name in (
        "sqlalchemy.engine",
        "sqlalchemy.pool",
        "urllib3",
        "apscheduler",
        "httpx",
    ):
        logging.getLogger(name).setLevel(logging.WARNING)
