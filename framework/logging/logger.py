import sys
from pathlib import Path
from contextvars import ContextVar
from typing import Optional
from loguru import logger
from fastapi import Request
from framework.config import settings

# Store current request in contextvars for async context
_current_request: ContextVar[Optional[Request]] = ContextVar("current_request", default=None)

LOG_DIR = Path(settings.LOG_DIR)

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{extra[name]}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | "
    "<magenta>Trace:{extra[trace_id]}</magenta> - <level>{message}</level>"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {extra[name]}:{function}:{line} | Trace:{extra[trace_id]} - {message}"

# Logger names whose records also go to the data access log
DATA_ACCESS_LOGGERS = ("unit_of_work", "cache.memory", "cache.redis")


def _is_data_access(record) -> bool:
    return record["extra"].get("name") in DATA_ACCESS_LOGGERS


class LogConfig:
    """Global logging configuration using Loguru."""
    @classmethod
    def setup_logging(cls, log_to_files: bool = True):
        logger.remove()
        logger.configure(extra={"trace_id": "system", "name": "app"})

        logger.add(
            sys.stdout,
            enqueue=True,
            backtrace=True,
            diagnose=settings.DEBUG,
            format=CONSOLE_FORMAT,
            level=settings.LOG_LEVEL,
        )

        if not log_to_files:
            return

        LOG_DIR.mkdir(parents=True, exist_ok=True)

        logger.add(
            LOG_DIR / "app_{time:YYYY-MM-DD}.log",
            rotation="00:00",
            retention="30 days",
            compression="zip",
            enqueue=True,
            format=FILE_FORMAT,
            level="DEBUG",
        )

        # Transactions, saves and cache invalidations, kept apart for auditing
        logger.add(
            LOG_DIR / "data_access_{time:YYYY-MM-DD}.log",
            rotation="00:00",
            retention="14 days",
            enqueue=True,
            format=FILE_FORMAT,
            filter=_is_data_access,
            level="DEBUG",
        )

        logger.add(
            LOG_DIR / "error_{time:YYYY-MM-DD}.log",
            level="ERROR",
            rotation="100 MB",
            enqueue=True,
        )

def get_logger(name: str = None, request: Optional[Request] = None):
    """
    Get logger instance bound to ``name``.

    With a request (passed or from context) the trace id is bound too; otherwise
    it comes from the middleware's contextualize() or the "system" default.
    """
    extra = {}
    if name:
        extra["name"] = name

    current_request = request or _current_request.get()
    if current_request is not None:
        extra["trace_id"] = getattr(current_request.state, "trace_id", "unknown")

    return logger.bind(**extra)
