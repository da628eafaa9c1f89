import logging
import logging.config
import os
import time
import uuid
from typing import Optional

import structlog

# Chatty third-party loggers that only matter when something is wrong
QUIET_LOGGERS = ("apscheduler", "urllib3", "werkzeug")

_SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.stdlib.add_logger_name,
    structlog.stdlib.add_log_level,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def configure_logging(log_level: str = "INFO", log_file: Optional[str] = None):
    """
    Route structlog and stdlib logging through the same handlers.

    The console gets key=value lines for humans. The optional rotating file
    gets one JSON object per line for log shipping.
    """
    log_level = log_level.upper()

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handlers = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "console",
            "stream": "ext://sys.stdout",
        }
    }
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir:
            os.makedirs(log_dir, exist_ok=True)
        handlers["file"] = {
            "class": "logging.handlers.RotatingFileHandler",
            "formatter": "json",
            "filename": log_file,
            "maxBytes": 10 * 1024 * 1024,
            "backupCount": 5,
            "encoding": "utf-8",
        }

    logging.config.dictConfig({
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "console": {
                "()": structlog.stdlib.ProcessorFormatter,
                "foreign_pre_chain": _SHARED_PROCESSORS,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.dev.ConsoleRenderer(colors=False),
                ],
            },
            "json": {
                "()": structlog.stdlib.ProcessorFormatter,
                "foreign_pre_chain": _SHARED_PROCESSORS,
                "processors": [
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.dict_tracebacks,
                    structlog.processors.JSONRenderer(),
                ],
            },
        },
        "handlers": handlers,
        "root": {"level": log_level, "handlers": list(handlers)},
        "loggers": {name: {"level": "WARNING"} for name in QUIET_LOGGERS},
    })

    logger = structlog.get_logger("outbound")
    logger.info("Logging configured", level=log_level, file=log_file)
    return logger


def get_logger(name: str) -> structlog.BoundLogger:
    return structlog.get_logger(name)


class BatchContext:
    """
    Wraps one scheduler, dispatcher or sweep run.

    The operation id is bound into structlog's contextvars for the duration,
    so every log line emitted by the run carries it, including those from
    services that never see the context object.
    """

    def __init__(self, operation_type: str, operation_id: Optional[str] = None, **context):
        self.operation_type = operation_type
        self.operation_id = operation_id or uuid.uuid4().hex[:8]
        self.context = context
        self.logger = get_logger("outbound.batch").bind(**context)
        self._started = None
        self._tokens = None

    def __enter__(self):
        self._tokens = structlog.contextvars.bind_contextvars(
            operation_type=self.operation_type,
            operation_id=self.operation_id,
        )
        self._started = time.monotonic()
        self.logger.info("Batch operation started")
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration = round(time.monotonic() - self._started, 3)
        try:
            if exc_type is None:
                self.logger.info("Batch operation completed", duration_seconds=duration)
            else:
                self.logger.error(
                    "Batch operation failed",
                    duration_seconds=duration,
                    error_type=exc_type.__name__,
                    error_message=str(exc_val),
                )
        finally:
            structlog.contextvars.reset_contextvars(**self._tokens)
        return False
