import logging
import sys
from typing import Optional

from loguru import logger


class InterceptHandler(logging.Handler):
    """Forward stdlib logging records to loguru."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            level = logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        logger.opt(exception=record.exc_info, depth=6).log(level, record.getMessage())


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    logger.remove()
    logger.add(sys.stdout, level=level, format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {name} | {message}")
    if log_file:
        logger.add(log_file, rotation="500 MB", level="DEBUG", format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {file} | {line} | {message}")
    logging.basicConfig(handlers=[InterceptHandler()], level=level, force=True)
    return logger
