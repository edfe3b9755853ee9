# metagdb/utils/logging.py
"""
This module provides centralized logging configuration for metagdb.
"""

import logging
from pathlib import Path
from typing import Optional
from rich.logging import RichHandler

LOGGER_NAME = "metagdb"


def setup_logger(logfile: Optional[Path] = None, verbose: bool = False) -> logging.Logger:
    """
    Configures the 'metagdb' logger and returns it.

    - Sets up a RichHandler for console output.
    - Optionally sets up a FileHandler if a logfile path is provided.
    - Log level is set to DEBUG if verbose is True, otherwise INFO.

    Args:
        logfile: Optional path to a file for log output.
        verbose: If True, sets the log level to DEBUG.

    Returns:
        The configured 'metagdb' logger instance.
    """
    level = logging.DEBUG if verbose else logging.INFO

    log = logging.getLogger(LOGGER_NAME)
    log.setLevel(level)
    log.propagate = False

    # Clear any existing handlers to avoid duplicate logs
    if log.hasHandlers():
        for handler in list(log.handlers):
            handler.close()
        log.handlers.clear()

    console_handler = RichHandler(
        rich_tracebacks=True,
        show_path=False,
        log_time_format="[%X]"
    )
    console_handler.setLevel(level)
    log.addHandler(console_handler)

    if logfile:
        logfile = Path(logfile)
        logfile.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(logfile)
        file_handler.setLevel(level)
        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        file_handler.setFormatter(formatter)
        log.addHandler(file_handler)
        log.debug("File logging enabled at: %s", logfile)

    log.debug("Logger configured with level=%s", logging.getLevelName(level))
    return log


def get_logger(name: str) -> logging.Logger:
    """
    Returns a logger that inherits the 'metagdb' configuration.

    Module names inside the package (``metagdb.db.api``) are already children
    of the root logger; anything else is nested under it.
    """
    if name != LOGGER_NAME and not name.startswith(LOGGER_NAME + "."):
        name = f"{LOGGER_NAME}.{name}"
    return logging.getLogger(name)
