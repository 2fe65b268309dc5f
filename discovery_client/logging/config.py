"""
Logging Setup

Library modules only emit events through structlog.get_logger("<component>").
Nothing is rendered until the embedding application opts in by calling
configure_logging() (or configure_from_settings()) once at startup.
"""
import logging
import sys
from typing import Any, List

import structlog

# HTTP stack loggers that would otherwise echo every registry request
NOISY_LOGGERS = ("httpcore", "httpx", "asyncio")


def _renderer(json_format: bool) -> List[Any]:
    if json_format:
        return [structlog.processors.dict_tracebacks, structlog.processors.JSONRenderer()]
    return [structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())]


def configure_logging(
    log_level: str = "INFO",
    json_format: bool = False,
    service_name: str = "discovery-client",
) -> int:
    """
    Route structlog through the stdlib logging tree.

    Every event carries ``service=<service_name>`` plus the component logger
    name. Returns the numeric level that was applied.
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            *_renderer(json_format),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    structlog.contextvars.bind_contextvars(service=service_name)

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))
    return level


def configure_from_settings(settings) -> int:
    return configure_logging(log_level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
