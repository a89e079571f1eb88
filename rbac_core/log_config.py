"""Loguru sink configuration."""
import sys

from loguru import logger

from rbac_core.config import Settings


def configure_logging(settings: Settings) -> None:
    """Replace loguru's default sink with a single stderr sink at the configured level."""
    logger.remove()
    logger.add(
        sys.stderr,
        level=settings.log_level.upper(),
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function} - {message}",
        backtrace=False,
        diagnose=False,
    )
