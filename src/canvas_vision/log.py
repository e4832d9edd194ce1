"""
log.py - Console (and optional file) logging for the command-line tools.

Library modules only call logging.getLogger(__name__); the entry points
call setup_logging() once.
"""

import logging
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(verbose: bool = False,
                  log_file: Optional[str] = None,
                  log_format: str = LOG_FORMAT) -> logging.Logger:
    """
    Configure the root logger.

    Args:
        verbose: DEBUG level if True, INFO otherwise.
        log_file: Also append to this file when given.
        log_format: Format string for every handler.

    Returns:
        The canvas_vision package logger.
    """
    level = logging.DEBUG if verbose else logging.INFO
    handlers = []

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(log_format))
    handlers.append(console_handler)

    if log_file:
        try:
            Path(log_file).parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, mode="a")
        except OSError as e:
            print(f"Warning: Could not setup file logging at {log_file}: {e}",
                  file=sys.stderr)
        else:
            file_handler.setLevel(level)
            file_handler.setFormatter(logging.Formatter(log_format))
            handlers.append(file_handler)

    logging.basicConfig(level=level, format=log_format, handlers=handlers, force=True)

    logger = logging.getLogger("canvas_vision")
    logger.setLevel(level)
    return logger
