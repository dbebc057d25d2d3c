"""Logging configuration for Tradegate processes."""

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)-40s | %(message)s"
DATE_FORMAT = "%H:%M:%S"

NOISY_LOGGERS = ("ccxt", "urllib3", "requests")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> None:
    """Configure root logging to stdout and optionally a file.

    Args:
        level: Log level name
        log_file: Optional log file path (parent directories are created)
    """
    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=DATE_FORMAT,
        handlers=handlers,
        force=True,
    )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
