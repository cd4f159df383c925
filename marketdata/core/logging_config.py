"""
Structured logging setup shared by every component.
Events are logged as snake_case names with key/value context, e.g.
``logger.info("fallback_refreshed", categories=4)``.
"""
import logging
import sys

import structlog

from marketdata.core.config import get_settings

_configured = False


def setup_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    global _configured
    settings = get_settings()
    level_name = (level or settings.LOG_LEVEL).upper()
    json_logs = settings.LOG_JSON if json_logs is None else json_logs

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level_name)
    logging.getLogger().setLevel(level_name)

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer(colors=False)

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True


def get_logger(name: str):
    if not _configured:
        setup_logging()
    return structlog.get_logger(name)
