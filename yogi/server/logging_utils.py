from __future__ import annotations

import logging
import sys

from loguru import logger

_LOG_FORMAT = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{thread.name}</cyan> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"


class InterceptHandler(logging.Handler):
    """Forwards stdlib logging records (Ultralytics, absl, uvicorn) into Loguru."""

    def emit(self, record: logging.LogRecord) -> None:  # pragma: no cover - thin wrapper
        try:
            level_name = logger.level(record.levelname).name
        except ValueError:
            level_name = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        logger.opt(depth=depth, exception=record.exc_info).log(level_name, record.getMessage())


def configure_logging(level: str = "INFO", enqueue: bool = True) -> None:
    """Configure Loguru to replace the standard logging handlers."""
    logger.remove()
    # The thread name shows which lane (camera reader, inference, session loop) logged a line.
    logger.add(sys.stderr, format=_LOG_FORMAT, level=level.upper(), enqueue=enqueue, backtrace=True, diagnose=False)
    logging.basicConfig(handlers=[InterceptHandler()], level=level.upper(), force=True)

