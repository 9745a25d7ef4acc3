"""Logging setup for the conductor CLI."""

from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def setup_logging(level: int = logging.WARNING, log_file: Path | None = None) -> logging.Logger:
    """Configure the ``conductor`` logger.

    Args:
        level: Console level.
        log_file: Optional file that receives DEBUG and above.

    Returns:
        The configured package logger.
    """
    logger = logging.getLogger("conductor")
    logger.setLevel(logging.DEBUG)
    logger.propagate = False
    logger.handlers = []

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        logger.addHandler(file_handler)

    return logger


def log_event(logger: logging.Logger, event: dict) -> None:
    """Mirror a structured event dict onto a logger at DEBUG."""
    name = event.get("event", "event")
    details = " ".join(f"{key}={value}" for key, value in event.items() if key != "event")
    logger.debug("%s %s", name, details)
