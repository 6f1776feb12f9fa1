"""Loguru sink setup.

stdout carries the MCP stdio stream, so every log line goes to stderr.
"""

import sys

from loguru import logger


def configure_logging(level: str = "ERROR") -> None:
    """Replace loguru's default sink with a stderr sink at ``level``."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | "
        "<cyan>{name}</cyan> - <level>{message}</level>",
        backtrace=False,
        diagnose=False,
    )
