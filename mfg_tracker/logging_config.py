"""
structlog setup for mfg_tracker.

Application code logs through get_logger(). Records are rendered to JSON by
structlog and then written by the stdlib handlers configured here, so Flask,
Werkzeug and SQLAlchemy messages share the same outputs.
"""
import logging
import logging.config
import os
import sys
import time
import uuid
from contextlib import contextmanager
from typing import Optional

import structlog

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_PROCESSORS = [
    structlog.stdlib.filter_by_level,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.stdlib.PositionalArgumentsFormatter(),
    structlog.processors.TimeStamper(fmt="iso", utc=True),
    structlog.processors.StackInfoRenderer(),
    structlog.processors.format_exc_info,
    structlog.processors.UnicodeDecoder(),
    structlog.processors.JSONRenderer(),
]


def _handlers(log_level, log_file):
    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "level": log_level,
            "formatter": "console",
            "stream": sys.stdout,
        },
    }
    if log_file:
        directory = os.path.dirname(log_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        # structlog output is already JSON; the file gets it unwrapped
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "level": log_level,
            "formatter": "raw",
            "filename": log_file,
            "maxBytes": LOG_FILE_MAX_BYTES,
            "backupCount": LOG_FILE_BACKUPS,
        }
    return handlers


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Configure structlog and the stdlib handlers it writes through.

    Args:
        log_level: Level name applied to the root logger and every handler
        log_file: Optional path of a size-rotated file receiving the same records
    """
    log_level = log_level.upper()
    structlog.configure(
        processors=_PROCESSORS,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = _handlers(log_level, log_file)
    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {"format": "%(asctime)s %(levelname)s %(name)s %(message)s"},
            "raw": {"format": "%(message)s"},
        },
        "handlers": handlers,
        "root": {"level": log_level, "handlers": list(handlers)},
    })

    logger = get_logger("mfg_tracker")
    logger.info("Logging configured", level=log_level, file=log_file)
    return logger


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


@contextmanager
def log_operation(operation: str, **context):
    """
    Log the start and the outcome of a multi-step operation.

    Every record carries the same short operation_id, so the steps of one
    upload or dispatch issue can be correlated. Exceptions propagate.
    """
    log = get_logger("mfg_tracker.operations").bind(
        operation=operation, operation_id=uuid.uuid4().hex[:8], **context
    )
    started = time.monotonic()
    log.info("Operation started")
    try:
        yield log
    except Exception as exc:
        log.warning(
            "Operation failed",
            duration_seconds=round(time.monotonic() - started, 3),
            error_type=type(exc).__name__,
            error_message=str(exc),
        )
        raise
    log.info("Operation completed", duration_seconds=round(time.monotonic() - started, 3))
