"""Shared loguru configuration for the coordinator and participant entry points."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

TEXT_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{extra[context]}</cyan> | <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level} | {extra[context]} | {message}"


def setup_logging(level: str = "INFO", file: Optional[str] = None, format: str = "text"):
    """
    Replace loguru's default sink with the project's console (and file) sinks.

    Args:
        level: Minimum level for all sinks
        file: Optional log file path; truncated on startup, rotated at 10 MB
        format: ``"text"`` for colourised output, ``"json"`` for one JSON record per line
    """
    logger.remove()
    logger.configure(extra={"context": "-"})

    if format == "json":
        logger.add(sys.stdout, level=level, serialize=True)
    else:
        logger.add(sys.stdout, level=level, format=TEXT_FORMAT, colorize=True)

    if file:
        log_path = Path(file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        if log_path.exists():
            log_path.unlink()

        logger.add(file, level=level, format=FILE_FORMAT, rotation="10 MB")
        logger.info(f"Logging to file: {file}")
