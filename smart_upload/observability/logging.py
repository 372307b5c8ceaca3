"""
structlog setup shared by the API and the queue workers.

Every log line is an event name plus key/value context. Inside a job the
queue binds job_id, kind, batch_id and item_id so handler logs carry them
without passing them around.
"""

import logging
import sys
from typing import Optional

import structlog

from smart_upload.config import settings

# Third-party loggers and the level they are held at.
_LIBRARY_LEVELS = {
    "uvicorn.access": logging.WARNING,
    "pdfminer": logging.WARNING,
    "PIL": logging.WARNING,
    "rq.worker": logging.INFO,
}


def _pre_chain() -> list:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(level: Optional[str] = None, json_logs: Optional[bool] = None) -> None:
    """Route structlog through stdlib logging with one stdout handler."""
    if json_logs is None:
        json_logs = not settings.DEBUG
    final = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=True)

    structlog.configure(
        processors=_pre_chain() + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    stream = logging.StreamHandler(sys.stdout)
    stream.setFormatter(structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_pre_chain(),
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, final],
    ))

    root = logging.getLogger()
    root.handlers = [stream]
    root.setLevel(getattr(logging, (level or settings.LOG_LEVEL).upper(), logging.INFO))

    for name, lib_level in _LIBRARY_LEVELS.items():
        logging.getLogger(name).setLevel(lib_level)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.INFO if settings.DB_ECHO else logging.WARNING)


def bind_job_context(**kwargs) -> None:
    """Bind job identifiers to every log line until cleared; None values are dropped."""
    structlog.contextvars.bind_contextvars(**{k: v for k, v in kwargs.items() if v is not None})


def clear_job_context() -> None:
    structlog.contextvars.clear_contextvars()
