"""Logging setup for the daemon and CLI."""

import sys
from pathlib import Path
from typing import Optional

from loguru import logger


CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "INFO", log_file: Optional[Path] = None) -> None:
    """Replace the default sink with a stderr sink and an optional rotating file."""
    logger.remove()
    logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level.upper())

    if log_file is not None:
        log_file = Path(log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_file,
            rotation="1 day",
            retention="7 days",
            level="DEBUG",
        )
