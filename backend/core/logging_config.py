"""Structured logging for the automation engine.

Everything goes through the stdlib root logger with a structlog
``ProcessorFormatter``; modules keep using ``logging.getLogger(__name__)``.
Execution identifiers bound with :func:`bind_execution_context` are merged
into every line emitted while a log is being processed.
"""

import logging
import sys
from typing import Optional

import structlog
from app.config import Settings, get_settings

# Library loggers and the level they are held at
LIBRARY_LOG_LEVELS = {
    "uvicorn.access": logging.WARNING,
    "httpx": logging.WARNING,
    "httpcore": logging.WARNING,
    "aiosqlite": logging.WARNING,
    "celery": logging.INFO,
}


def _renderer(settings: Settings):
    if settings.is_development or settings.LOG_FORMAT == "text":
        return structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    return structlog.processors.JSONRenderer(sort_keys=True)


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Route all application and library logging through structlog.

    JSON lines in production, console output in development or when
    ``LOG_FORMAT=text``.
    """
    settings = settings or get_settings()

    pre_chain: list = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
    ]

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                _renderer(settings),
            ],
            foreign_pre_chain=pre_chain,
        )
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name, level in LIBRARY_LOG_LEVELS.items():
        logging.getLogger(name).setLevel(level)
    logging.getLogger("sqlalchemy.engine").setLevel(
        logging.INFO if settings.SQLALCHEMY_ECHO else logging.WARNING
    )


def bind_execution_context(**values) -> None:
    """Attach execution identifiers (log id, workflow id) to later log lines."""
    structlog.contextvars.bind_contextvars(
        **{key: value for key, value in values.items() if value is not None}
    )


def clear_execution_context() -> None:
    """Drop identifiers bound by :func:`bind_execution_context`."""
    structlog.contextvars.clear_contextvars()
