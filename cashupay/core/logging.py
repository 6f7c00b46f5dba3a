import logging
import os
import sys
from typing import Optional

from loguru import logger

from ..core.settings import settings

MINIMAL_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SS}</green> | <level>{level}</level> |"
    " <level>{message}</level>\n"
)
DEBUG_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SS}</green> | <level>{level: <4}</level> |"
    " <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> |"
    " <level>{message}</level>\n"
)

# stdlib loggers whose records end up in our sinks
INTERCEPTED = ("uvicorn", "uvicorn.access", "uvicorn.error", "httpx")


class InterceptHandler(logging.Handler):
    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno  # type: ignore
        logger.opt(exception=record.exc_info).log(level, record.getMessage())


def _format(record) -> str:
    # forwarded stdlib records would only show the handler as their origin
    if not settings.debug or record["function"] == "emit":
        return MINIMAL_FORMAT
    return DEBUG_FORMAT


def configure_logger(log_file: Optional[str] = None) -> None:
    """Routes gateway, uvicorn and httpx logs to stderr and optionally a file.

    DEBUG bumps the default INFO level to DEBUG and adds source locations.
    """
    log_level = settings.log_level.upper()
    if settings.debug and log_level == "INFO":
        log_level = "DEBUG"

    logger.remove()
    logger.add(sys.stderr, level=log_level, format=_format)

    log_file = log_file or settings.log_file
    if log_file:
        os.makedirs(os.path.dirname(os.path.abspath(log_file)), exist_ok=True)
        logger.add(
            log_file,
            level=log_level,
            format=DEBUG_FORMAT,
            rotation=settings.log_rotation,
            colorize=False,
        )

    for name in INTERCEPTED:
        stdlib_logger = logging.getLogger(name)
        stdlib_logger.handlers = [InterceptHandler()]
        stdlib_logger.propagate = False
