import logging
import os
import sys
from pathlib import Path
from typing import Any

import structlog


def configure_logging(level: str | None = None, log_format: str | None = None) -> None:
    """Configure structured logging for the engine, CLI and worker.

    ``level`` and ``log_format`` normally come from ``AppConfig``; when omitted
    the ``LOG_LEVEL`` and ``LOG_FORMAT`` environment variables apply.
    """

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]

    json_logs = (
        os.getenv("JSON_LOGS", "false").lower() == "true"
        or (log_format or os.getenv("LOG_FORMAT", "text")).lower() == "json"
    )
    if json_logs:
        # Production: JSON logs
        renderer: Any = structlog.processors.JSONRenderer()
    else:
        # Development: Pretty console logs
        renderer = structlog.dev.ConsoleRenderer()

    structlog.configure(
        processors=shared_processors + [renderer],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Route stdlib records (engine modules use logging.getLogger) through structlog
    formatter = structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=shared_processors,
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
    )

    handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]

    # Add FileHandler if logs directory exists
    log_file = Path("logs/recunlock.log")
    if log_file.parent.exists():
        handlers.append(logging.FileHandler(log_file))

    for handler in handlers:
        handler.setFormatter(formatter)

    logging.basicConfig(
        handlers=handlers,
        level=(level or os.getenv("LOG_LEVEL", "INFO")).upper(),
        force=True,
    )


def bind_scan(scan_id: int, **extra: Any) -> None:
    """Attach scan context to every log line emitted in this task."""
    structlog.contextvars.bind_contextvars(scan_id=scan_id, **extra)


def clear_context() -> None:
    structlog.contextvars.clear_contextvars()
