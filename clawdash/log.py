"""Logging configuration for clawdash."""

from __future__ import annotations

import logging
import sys
from pathlib import Path


def get_logger(name: str) -> logging.Logger:
    """Get a logger instance."""
    return logging.getLogger(f"clawdash.{name}")


def setup_logging(
    level: str = "INFO",
    log_file: Path | None = None,
    console: bool = False,
) -> logging.Logger:
    """Configure logging for clawdash.

    The curses dashboard owns the terminal, so console output is opt-in
    (headless mode only). Without a file or console handler, records are
    dropped by a NullHandler.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file to write logs to
        console: Also log to stderr
    """
    logger = logging.getLogger("clawdash")
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    if console:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setFormatter(
            logging.Formatter("%(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
        )
        logger.addHandler(file_handler)

    if not logger.handlers:
        logger.addHandler(logging.NullHandler())

    # Don't propagate to root logger
    logger.propagate = False
    return logger
