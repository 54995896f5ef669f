"""Structured logging configuration using structlog.

JSON lines in production, colored console output in development or
when LOG_FORMAT=text. Every entry carries the service name, version and
environment so logs from several orchestrator processes can be told
apart once aggregated; per-job fields (job_id, workflow, attempt) are
bound through contextvars by the executor.
"""

import logging
import sys
from typing import Optional

import structlog
from structlog.typing import EventDict, Processor

from app.config import Settings, get_settings

QUIET_LOGGERS = ("httpx", "httpcore", "asyncio")


def service_context(settings: Settings) -> Processor:
    """Processor stamping service/version/environment onto each entry."""
    fields = {
        "service": settings.APP_NAME,
        "version": settings.APP_VERSION,
        "environment": settings.ENVIRONMENT,
    }

    def add_service_context(logger, method_name: str, event_dict: EventDict) -> EventDict:
        for key, value in fields.items():
            event_dict.setdefault(key, value)
        return event_dict

    return add_service_context


def build_processors(settings: Settings) -> list[Processor]:
    """Processors shared by structlog loggers and foreign stdlib records."""
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        service_context(settings),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
    ]


def setup_logging(settings: Optional[Settings] = None) -> None:
    """Configure structlog and the root logger for the orchestrator process."""
    settings = settings or get_settings()
    shared_processors = build_processors(settings)

    if settings.is_development or settings.LOG_FORMAT == "text":
        renderer = structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    else:
        renderer = structlog.processors.JSONRenderer()

    structlog.configure(
        processors=[
            *shared_processors,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            renderer,
        ],
        foreign_pre_chain=shared_processors,
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
